"""Range drift detection for bin-based liquidity positions.

Pure functions only: given the position's bin span, the pool's active bin
and a tolerance buffer, decide whether the position needs repositioning.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RangeCheck:
    min_bin: int
    max_bin: int
    active_bin: int
    buffer: int
    out_of_range: bool
    distance: int  # bins past the nearer edge, 0 while inside the span

    @property
    def near_edge(self) -> bool:
        """Outside the span but still inside the buffer."""
        return self.distance > 0 and not self.out_of_range

    def describe(self) -> str:
        return (
            f"active={self.active_bin} range={self.min_bin}-{self.max_bin} "
            f"buffer={self.buffer} distance={self.distance}"
        )


def is_out_of_range(min_bin: int, max_bin: int, active_bin: int, buffer: int) -> bool:
    return active_bin < min_bin - buffer or active_bin > max_bin + buffer


def distance_from_range(min_bin: int, max_bin: int, active_bin: int) -> int:
    if active_bin < min_bin:
        return min_bin - active_bin
    if active_bin > max_bin:
        return active_bin - max_bin
    return 0


def check_range(min_bin: int, max_bin: int, active_bin: int, buffer: int) -> RangeCheck:
    if min_bin > max_bin:
        raise ValueError(f"min_bin {min_bin} is above max_bin {max_bin}")
    if buffer < 0:
        raise ValueError(f"buffer must be >= 0, got {buffer}")
    return RangeCheck(
        min_bin=min_bin,
        max_bin=max_bin,
        active_bin=active_bin,
        buffer=buffer,
        out_of_range=is_out_of_range(min_bin, max_bin, active_bin, buffer),
        distance=distance_from_range(min_bin, max_bin, active_bin),
    )


def centered_range(active_bin: int, width: int) -> tuple[int, int]:
    """Bin span of ``width`` bins past the lower edge, centered on ``active_bin``."""
    lower = active_bin - width // 2
    return lower, lower + width


def urgency(check: RangeCheck, high_distance: int) -> str:
    """low while within the buffer, medium once out of range, high at ``high_distance`` bins out."""
    if not check.out_of_range:
        return "low"
    if check.distance >= high_distance:
        return "high"
    return "medium"
