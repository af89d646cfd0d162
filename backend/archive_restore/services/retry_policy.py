from datetime import datetime, timezone


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    if max_attempts <= 0:
        return False
    return attempt_count < max_attempts


def compute_backoff_seconds(attempt_count: int, base_seconds: int, max_seconds: int) -> int:
    safe_attempt = max(1, int(attempt_count))
    safe_base = max(1, int(base_seconds))
    safe_max = max(safe_base, int(max_seconds))

    # attempt=1 -> base, attempt=2 -> 2*base, ...
    backoff = safe_base * (2 ** (safe_attempt - 1))
    return min(backoff, safe_max)


def item_retry_exhausted(retry_count: int, max_retries: int) -> bool:
    # retry_count starts at 1 when the item first fails
    return retry_count > max(0, int(max_retries))


def is_stalled(last_processing_time: float, now: float, stall_timeout_seconds: float) -> bool:
    if last_processing_time <= 0:
        return False
    return (now - last_processing_time) > stall_timeout_seconds
