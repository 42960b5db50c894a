from typing import Tuple


def compute_target_size(width: int, height: int, max_side: int) -> Tuple[int, int]:
    """
    Returns the size an image should be scaled to so that its longest side is
    at most max_side, keeping the aspect ratio.

    Images already inside the box are returned unchanged (no upscaling).
    The shorter side uses truncating integer division.
    """
    for label, value in (("width", width), ("height", height), ("max_side", max_side)):
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ValueError(f"{label} must be a positive integer, got {value!r}")

    if width <= max_side and height <= max_side:
        return width, height

    if width == height:
        return max_side, max_side

    if width < height:
        # portrait: height pinned to the box
        return max(1, (max_side * width) // height), max_side

    return max_side, max(1, (max_side * height) // width)
