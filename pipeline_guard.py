"""
Run pipeline work under retry + failure tracking.

Glue between the pipelines (enrichment, sequencing) and the resilience
layer: every call is retried with backoff, and its final outcome is reported
to the AlertManager.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from alerts import AlertManager
from errors import classify_error, get_error_message
from log_utils import create_logger, generate_correlation_id, sanitize_contact
from rate_limiter import RateLimiter
from retry import RetryConfig, retry_with_backoff

logger = create_logger("pipeline-guard")


@dataclass
class ItemFailure:
    """One item that failed after retries."""
    index: int
    item_id: Any
    error_type: str
    error: str


@dataclass
class BatchResult:
    """Aggregate result of processing a batch of items."""
    succeeded: list = field(default_factory=list)
    failed: list[ItemFailure] = field(default_factory=list)
    total: int = 0
    correlation_id: str | None = None


def _limited(operation: Callable[[], Any], rate_limiter: RateLimiter | None) -> Callable[[], Any]:
    if rate_limiter is None:
        return operation

    def call():
        rate_limiter.acquire()
        return operation()

    return call


def run_guarded(pipeline: str, operation: Callable[[], Any], tracker: AlertManager,
                context: dict | None = None, retry_config: RetryConfig | None = None,
                rate_limiter: RateLimiter | None = None) -> Any:
    """Run one operation with retries and report the outcome.

    Success resets the pipeline's failure count. A final failure is recorded
    with the tracker and then re-raised unchanged.
    """
    try:
        result = retry_with_backoff(_limited(operation, rate_limiter), retry_config)
    except Exception as error:
        tracker.record_failure(pipeline, error, context)
        raise
    tracker.record_success(pipeline)
    return result


def process_batch(pipeline: str, items: Iterable, handler: Callable[[Any], Any],
                  tracker: AlertManager, retry_config: RetryConfig | None = None,
                  rate_limiter: RateLimiter | None = None,
                  correlation_id: str | None = None) -> BatchResult:
    """Process items one at a time, continuing past individual failures.

    Each failed item is reported to the tracker. The pipeline is only marked
    successful when every item went through.
    """
    items = list(items)
    correlation_id = correlation_id or generate_correlation_id()
    run_logger = logger.bind(correlation_id=correlation_id, pipeline=pipeline)
    result = BatchResult(total=len(items), correlation_id=correlation_id)

    run_logger.info("Processing batch", total=len(items))

    for i, item in enumerate(items):
        safe_item = sanitize_contact(item)
        item_id = safe_item.get("id") if safe_item else None
        try:
            output = retry_with_backoff(
                _limited(lambda: handler(item), rate_limiter),
                retry_config,
            )
        except Exception as error:
            classification = classify_error(error)
            run_logger.warning(
                "Item failed after retries",
                index=i,
                item=safe_item,
                error_type=classification.type.value,
                error=get_error_message(error),
            )
            result.failed.append(ItemFailure(
                index=i,
                item_id=item_id,
                error_type=classification.type.value,
                error=get_error_message(error),
            ))
            tracker.record_failure(pipeline, error, {
                "item_id": item_id,
                "index": i,
                "correlation_id": correlation_id,
            })
            continue

        result.succeeded.append(output)
        run_logger.debug("Item processed", index=i, item=safe_item)

    if not result.failed:
        tracker.record_success(pipeline)

    run_logger.info(
        "Batch complete",
        succeeded=len(result.succeeded),
        failed=len(result.failed),
    )
    return result
