"""Work out how big a PVC should become when it crosses its threshold."""

from .quantity import GI

DEFAULT_INCREASE_MINIMUM = GI


def calculate_new_size(current_bytes, increase_percent, max_bytes, increase_minimum=None):
    """Return the size in bytes to grow a volume of current_bytes to.

    The increase is increase_percent of the current size, raised to
    increase_minimum when that's given, or to DEFAULT_INCREASE_MINIMUM when it
    isn't. The result is capped at max_bytes.

    Shrinking is never suggested: a volume already past max_bytes comes back
    at its current size.
    """
    increase = current_bytes * increase_percent // 100

    if increase_minimum is not None:
        if increase < increase_minimum:
            increase = increase_minimum
    elif increase < DEFAULT_INCREASE_MINIMUM:
        increase = DEFAULT_INCREASE_MINIMUM

    new_bytes = current_bytes + increase
    if new_bytes > max_bytes:
        new_bytes = max(max_bytes, current_bytes)
    return new_bytes
