#!/usr/bin/env python3
"""
Alerting health check: print alert status, optionally send a test alert.

Usage:
    python scripts/check_alerts.py                          # Print config + status
    python scripts/check_alerts.py --send-test              # Send a test alert (enrichment)
    python scripts/check_alerts.py --send-test --pipeline sequencing
    python scripts/check_alerts.py --verbose                # Debug logging
"""

import argparse
import json
import sys
from pathlib import Path

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from alerts import AlertManager
from config import get_alert_config, get_logging_config
from log_utils import configure_logging, create_logger

logger = create_logger("check-alerts")


class SyntheticAlertError(Exception):
    """Synthetic failure used for the test alert."""


def run_check(manager: AlertManager, send_test: bool, pipeline: str) -> tuple[dict, bool]:
    """Return (report, ok). ok is False only when a requested test alert was not sent."""
    config = manager.config
    report = {
        "alerts": {
            "enabled": config.enabled,
            "email_to": config.email_to,
            "email_from": config.email_from,
            "failure_threshold": config.failure_threshold,
            "smtp_host": config.smtp.host,
            "smtp_port": config.smtp.port,
            "smtp_secure": config.smtp.secure,
            "transport_configured": manager.transport is not None,
        },
        "status": manager.get_status(),
    }

    if not send_test:
        return report, True

    error = SyntheticAlertError("Test alert triggered from check_alerts.py")
    sent = manager.send_alert(pipeline, error, {"trigger": "manual", "pipeline": pipeline})
    report["test_alert"] = {"pipeline": pipeline, "sent": sent}
    report["status"] = manager.get_status()
    return report, sent


def main(argv=None):
    parser = argparse.ArgumentParser(description="Lead sync alerting health check")
    parser.add_argument("--send-test", action="store_true",
                        help="Send a test alert email through the configured transport")
    parser.add_argument("--pipeline", default="enrichment",
                        help="Pipeline name used for the test alert")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    args = parser.parse_args(argv)

    logging_cfg = get_logging_config()
    configure_logging(level="DEBUG" if args.verbose else logging_cfg.get("level"),
                      fmt=logging_cfg.get("format"))

    manager = AlertManager(get_alert_config())
    report, ok = run_check(manager, args.send_test, args.pipeline)
    print(json.dumps(report, indent=2, default=str))

    if not ok:
        logger.error("Test alert was not sent", pipeline=args.pipeline)
        sys.exit(1)


if __name__ == "__main__":
    main()
