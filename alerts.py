"""
Pipeline failure tracking and email alerts.

- Consecutive-failure counters per pipeline (enrichment, sequencing, ...)
- Alert once the failure threshold is reached, at most once per cooldown
- Plain-text + HTML alert email via SMTP

Failure reporting never raises: an alert that cannot be formatted or sent is
logged and the calling pipeline carries on.
"""

import html
import json
import smtplib
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Protocol

from errors import format_stack, get_error_message, get_status_code
from log_utils import create_logger, redact

logger = create_logger("email-alert")

SERVICE_NAME = "HubSpot-Lemlist Lead Sync"
ALERT_COOLDOWN_SECONDS = 15 * 60
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_EMAIL_FROM = "leadsync@localhost"
DEFAULT_PIPELINES = ("enrichment", "sequencing")

COMMON_ISSUES = [
    "API credentials expired or invalid",
    "Rate limits exceeded",
    "Network connectivity issues",
    "HubSpot/Lemlist service outage",
]


@dataclass(frozen=True)
class SmtpConfig:
    """SMTP connection settings."""

    host: str | None = None
    port: int = 587
    secure: bool = False  # implicit TLS (port 465); otherwise STARTTLS when offered
    user: str | None = None
    password: str | None = None


@dataclass(frozen=True)
class AlertConfig:
    """Alerting settings, fixed at construction."""

    enabled: bool = False
    email_to: str | None = None
    email_from: str = DEFAULT_EMAIL_FROM
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    smtp: SmtpConfig = field(default_factory=SmtpConfig)

    @classmethod
    def from_mapping(cls, data: Mapping) -> "AlertConfig":
        """Build from the ``alerts`` section of the settings."""
        smtp = data.get("smtp") or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            email_to=data.get("email_to"),
            email_from=data.get("email_from") or DEFAULT_EMAIL_FROM,
            failure_threshold=int(data.get("failure_threshold") or DEFAULT_FAILURE_THRESHOLD),
            smtp=SmtpConfig(
                host=smtp.get("host"),
                port=int(smtp.get("port") or 587),
                secure=bool(smtp.get("secure", False)),
                user=smtp.get("user"),
                password=smtp.get("password"),
            ),
        )


@dataclass
class PipelineFailureState:
    """Failure state for one pipeline, kept for the process lifetime."""

    consecutive_failures: int = 0
    last_alert_at: float | None = None  # epoch seconds of the last sent alert


class InMemoryFailureStore:
    """Process-local failure counters, one state per pipeline name.

    Every read-modify-write happens under one lock so concurrent reporters for
    the same pipeline never lose an update. Swap in another object with the
    same methods to persist counters across restarts.
    """

    def __init__(self, pipelines=DEFAULT_PIPELINES):
        self._lock = threading.Lock()
        self._states: dict[str, PipelineFailureState] = {
            name: PipelineFailureState() for name in pipelines
        }

    def _state(self, pipeline: str) -> PipelineFailureState:
        if pipeline not in self._states:
            self._states[pipeline] = PipelineFailureState()
        return self._states[pipeline]

    def increment(self, pipeline: str) -> int:
        with self._lock:
            state = self._state(pipeline)
            state.consecutive_failures += 1
            return state.consecutive_failures

    def reset(self, pipeline: str) -> bool:
        """Zero the counter. Returns True if it was non-zero."""
        with self._lock:
            state = self._state(pipeline)
            was_failing = state.consecutive_failures > 0
            state.consecutive_failures = 0
            return was_failing

    def get(self, pipeline: str) -> PipelineFailureState:
        with self._lock:
            return replace(self._state(pipeline))

    def mark_alert_sent(self, pipeline: str, timestamp: float) -> None:
        with self._lock:
            self._state(pipeline).last_alert_at = timestamp

    def snapshot(self) -> dict[str, PipelineFailureState]:
        with self._lock:
            return {name: replace(state) for name, state in self._states.items()}

    def clear(self) -> None:
        with self._lock:
            for state in self._states.values():
                state.consecutive_failures = 0
                state.last_alert_at = None


class AlertTransport(Protocol):
    def send(self, message: MIMEMultipart) -> None: ...


class SmtpTransport:
    """Sends alert emails through an SMTP server."""

    def __init__(self, smtp_config: SmtpConfig, timeout: float = 30.0):
        self.config = smtp_config
        self.timeout = timeout

    def send(self, message: MIMEMultipart) -> None:
        cfg = self.config
        if cfg.secure:
            server = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(cfg.host, cfg.port, timeout=self.timeout)

        with server:
            if not cfg.secure:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            if cfg.user:
                server.login(cfg.user, cfg.password or "")
            server.send_message(message)


class AlertManager:
    """
    Tracks consecutive failures per pipeline and emails an alert once the
    threshold is crossed.
    """

    def __init__(self, config: AlertConfig, transport: AlertTransport | None = None,
                 store: InMemoryFailureStore | None = None,
                 clock: Callable[[], float] = time.time,
                 cooldown_seconds: float = ALERT_COOLDOWN_SECONDS):
        """
        Initialize alert manager.

        Args:
            config: AlertConfig (enabled flag, addresses, threshold, SMTP)
            transport: Object with send(message); defaults to SMTP when a host is set
            store: Failure state container; defaults to a fresh in-memory store
            clock: Returns the current time in epoch seconds
            cooldown_seconds: Minimum time between alerts for one pipeline
        """
        self.config = config
        self.store = store if store is not None else InMemoryFailureStore()
        self.clock = clock
        self.cooldown_seconds = cooldown_seconds

        if transport is None and config.enabled and config.smtp.host:
            transport = SmtpTransport(config.smtp)
        self.transport = transport

        # One in-flight dispatch per pipeline
        self._dispatch_lock = threading.Lock()
        self._dispatching: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def failure_threshold(self) -> int:
        return self.config.failure_threshold

    def record_success(self, pipeline: str) -> None:
        """Record a successful run (resets the failure count)."""
        if self.store.reset(pipeline):
            logger.debug("Resetting failure count after success", pipeline=pipeline)

    def record_failure(self, pipeline: str, error: Any, context: Mapping | None = None) -> None:
        """Record a failed run and alert if the threshold is reached. Never raises."""
        try:
            count = self.store.increment(pipeline)
            logger.warning(
                "Recorded pipeline failure",
                pipeline=pipeline,
                consecutive_failures=count,
                threshold=self.failure_threshold,
            )
            if count >= self.failure_threshold:
                self.send_alert(pipeline, error, context)
        except Exception as e:
            logger.exception("Failure reporting error", pipeline=pipeline, error=str(e))

    def can_send_alert(self, pipeline: str) -> bool:
        """True if the cooldown has elapsed since the last sent alert."""
        last_alert = self.store.get(pipeline).last_alert_at
        if last_alert is None:
            return True
        return (self.clock() - last_alert) >= self.cooldown_seconds

    def send_alert(self, pipeline: str, error: Any, context: Mapping | None = None) -> bool:
        """Send an alert email. Returns True only if the email went out."""
        if not self.enabled or self.transport is None:
            logger.warning("Email alerts disabled, skipping notification", pipeline=pipeline)
            return False

        with self._dispatch_lock:
            if not self.can_send_alert(pipeline):
                logger.debug("Alert cooldown active, skipping notification", pipeline=pipeline)
                return False
            if pipeline in self._dispatching:
                logger.debug("Alert already being sent, skipping notification", pipeline=pipeline)
                return False
            self._dispatching.add(pipeline)

        sent = False
        try:
            message = self.build_alert_message(pipeline, error, context or {})
            self.transport.send(message)
            sent = True
        except Exception as e:
            logger.error("Failed to send alert email", pipeline=pipeline, error=str(e))
        finally:
            with self._dispatch_lock:
                try:
                    # Only a confirmed send starts the cooldown, stamped before release
                    if sent:
                        self.store.mark_alert_sent(pipeline, self.clock())
                finally:
                    self._dispatching.discard(pipeline)

        if not sent:
            return False
        logger.info("Alert email sent", pipeline=pipeline, to=self.config.email_to)
        return True

    # --- Formatting ---

    def _alert_fields(self, pipeline: str, error: Any, context: Mapping) -> dict:
        return {
            "timestamp": datetime.fromtimestamp(self.clock(), timezone.utc).isoformat(),
            "failure_count": self.store.get(pipeline).consecutive_failures,
            "message": get_error_message(error) or repr(error),
            "status": get_status_code(error),
            "stack": format_stack(error),
            "context": {
                str(k): json.dumps(v, default=str) for k, v in redact(dict(context)).items()
            },
        }

    def build_alert_message(self, pipeline: str, error: Any, context: Mapping) -> MIMEMultipart:
        """Build MIME email with plain-text and HTML alternatives."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = f"[ALERT] {SERVICE_NAME} - {pipeline} Pipeline Failures"
        msg["From"] = self.config.email_from
        msg["To"] = self.config.email_to or ""
        msg.attach(MIMEText(self.format_alert_body(pipeline, error, context), "plain"))
        msg.attach(MIMEText(self.format_alert_html(pipeline, error, context), "html"))
        return msg

    def format_alert_body(self, pipeline: str, error: Any, context: Mapping) -> str:
        """Format plain text alert body."""
        f = self._alert_fields(pipeline, error, context)

        lines = [
            f"{SERVICE_NAME} Alert",
            "=" * (len(SERVICE_NAME) + 6),
            "",
            f"Pipeline: {pipeline}",
            f"Timestamp: {f['timestamp']}",
            f"Consecutive Failures: {f['failure_count']}",
            "",
            "Error Details:",
            "--------------",
            f"Message: {f['message']}",
        ]
        if f["status"] is not None:
            lines.append(f"HTTP Status: {f['status']}")
        if f["stack"]:
            lines += ["", "Stack Trace:", f["stack"].rstrip()]

        lines += ["", "Context:", "--------"]
        lines += [f"{key}: {value}" for key, value in f["context"].items()]

        lines += [
            "",
            "Action Required:",
            "----------------",
            f"Please investigate the integration service. The {pipeline} pipeline "
            f"has failed {f['failure_count']} consecutive times.",
            "",
            "Common issues:",
        ]
        lines += [f"- {issue}" for issue in COMMON_ISSUES]
        lines += ["", "---", f"This is an automated alert from the {SERVICE_NAME} service."]
        return "\n".join(lines)

    def format_alert_html(self, pipeline: str, error: Any, context: Mapping) -> str:
        """Format inline-styled HTML alert body."""
        f = self._alert_fields(pipeline, error, context)
        esc = html.escape

        status_html = ""
        if f["status"] is not None:
            status_html = f"<p style='margin:4px 0'>HTTP Status: {f['status']}</p>"

        stack_html = ""
        if f["stack"]:
            stack_html = (
                "<pre style='font-size:12px;white-space:pre-wrap;color:#555'>"
                f"{esc(f['stack'])}</pre>"
            )

        context_html = ""
        if f["context"]:
            rows = "".join(
                f"<tr><td style='padding:8px;border-bottom:1px solid #eee;font-weight:bold;color:#666'>{esc(k)}</td>"
                f"<td style='padding:8px;border-bottom:1px solid #eee'>{esc(v)}</td></tr>"
                for k, v in f["context"].items()
            )
            context_html = f"""
    <h3>Context</h3>
    <table style='width:100%;border-collapse:collapse'>
    {rows}
    </table>"""

        issues_html = "".join(f"<li>{esc(issue)}</li>" for issue in COMMON_ISSUES)

        return f"""<html><body style='font-family:Arial,sans-serif;line-height:1.6;color:#333'>
    <div style='background:#dc3545;color:white;padding:20px'>
    <h2 style='margin:0'>{esc(SERVICE_NAME)} Alert</h2>
    </div>
    <div style='padding:20px'>
    <p><b>Pipeline:</b> {esc(pipeline)}</p>
    <p><b>Timestamp:</b> {f['timestamp']}</p>
    <p><b>Consecutive Failures:</b> <strong>{f['failure_count']}</strong></p>
    <h3>Error Details</h3>
    <div style='background:#f8f9fa;border-left:4px solid #dc3545;padding:15px;margin:10px 0'>
    <p style='margin:4px 0'><strong>{esc(f['message'])}</strong></p>
    {status_html}
    {stack_html}
    </div>
    {context_html}
    <h3>Action Required</h3>
    <p>Please investigate the integration service. Common issues include:</p>
    <ul>{issues_html}</ul>
    </div>
    <p style='background:#f8f9fa;padding:15px;font-size:12px;color:#666'>
    This is an automated alert from the {esc(SERVICE_NAME)} service.</p>
    </body></html>"""

    # --- Status ---

    def get_status(self) -> dict:
        """Read-only snapshot for health checks."""
        states = self.store.snapshot()
        return {
            "enabled": self.enabled,
            "failure_threshold": self.failure_threshold,
            "failure_counts": {name: s.consecutive_failures for name, s in states.items()},
            "last_alert_times": {name: s.last_alert_at for name, s in states.items()},
        }

    def reset(self) -> None:
        """Clear all failure counts and alert times."""
        self.store.clear()
