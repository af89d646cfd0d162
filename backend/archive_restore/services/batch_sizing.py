SPEED_MIN = 2
SPEED_MAX = 25

FILE_BATCH_MIN = 20
FILE_BATCH_MAX = 300
DB_BATCH_MIN = 500
DB_BATCH_MAX = 10000

ADAPTIVE_DB_BATCH_MIN = 1
ADAPTIVE_DB_BATCH_MAX = 10000


def clamp_speed(speed: int) -> int:
    return max(SPEED_MIN, min(SPEED_MAX, int(speed)))


def _interpolate(speed: int, low: int, high: int) -> int:
    factor = (clamp_speed(speed) - SPEED_MIN) / (SPEED_MAX - SPEED_MIN)
    size = round(low + factor * (high - low))
    return max(low, min(high, size))


def file_batch_size_for_speed(speed: int) -> int:
    return _interpolate(speed, FILE_BATCH_MIN, FILE_BATCH_MAX)


def db_batch_size_for_speed(speed: int) -> int:
    return _interpolate(speed, DB_BATCH_MIN, DB_BATCH_MAX)


def max_steps_for_speed(speed: int) -> int:
    return clamp_speed(speed)


def adapt_db_batch_size(
    current: int,
    *,
    last_batch_time: float,
    last_batch_items: int,
    memory_ratio: float,
    optimal_time_per_batch: float = 15.0,
) -> int:
    """Scale the table batch toward the target batch duration.

    Memory pressure above 70% shrinks the batch by 0.7x, below 40% grows it by 1.2x.
    The result always stays inside [1, 10000].
    """
    size = max(ADAPTIVE_DB_BATCH_MIN, int(current))
    if last_batch_time > 0 and last_batch_items > 0:
        time_factor = optimal_time_per_batch / max(1.0, last_batch_time)
        memory_factor = 1.0
        if memory_ratio > 0.7:
            memory_factor = 0.7
        elif memory_ratio < 0.4:
            memory_factor = 1.2
        size = round(size * time_factor * memory_factor)
    return max(ADAPTIVE_DB_BATCH_MIN, min(ADAPTIVE_DB_BATCH_MAX, int(size)))


def split_file_batch(total: int, *, dirs_remaining: int, files_remaining: int, dirs_total: int) -> tuple[int, int]:
    """Return (directory share, file share); the two always add up to ``total``."""
    total = max(0, int(total))
    if dirs_remaining <= 0:
        return 0, total
    if files_remaining <= 0:
        return total, 0
    # integer ceil of 30% / 70%
    if dirs_remaining < dirs_total / 2:
        dir_share = -(-total * 3 // 10)
    else:
        dir_share = -(-total * 7 // 10)
    dir_share = min(dir_share, total)
    return dir_share, total - dir_share
