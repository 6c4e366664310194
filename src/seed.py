import numpy as np

from errors import InvalidInputError

# Mask labels (same values as OpenCV's grabCut)
GC_BGD = 0  # definite background
GC_FGD = 1  # definite foreground
GC_PR_BGD = 2  # probable background
GC_PR_FGD = 3  # probable foreground

LABELS = (GC_BGD, GC_FGD, GC_PR_BGD, GC_PR_FGD)

# Pixel-to-node sentinels for pixels merged straight into a terminal
JOINED_SINK = -1
JOINED_SOURCE = -2


def check_image(img: np.ndarray) -> None:
    """
    Validates the input image: a non-empty 8-bit, 3-channel array.
    """
    if img is None or not isinstance(img, np.ndarray) or img.size == 0:
        raise InvalidInputError("image is empty")
    if img.dtype != np.uint8 or img.ndim != 3 or img.shape[2] != 3:
        raise InvalidInputError("image must be an 8-bit 3-channel array")


def check_mask(img: np.ndarray, mask: np.ndarray) -> None:
    """
    Checks size, type and element values of a label mask.

    Parameters:
    -----------
    img : np.ndarray
        The image the mask refers to, shape (rows, cols, 3).
    mask : np.ndarray
        Label mask of shape (rows, cols) and dtype uint8 holding only
        GC_BGD, GC_FGD, GC_PR_BGD or GC_PR_FGD.
    """
    if mask is None or not isinstance(mask, np.ndarray) or mask.size == 0:
        raise InvalidInputError("mask is empty")
    if mask.dtype != np.uint8 or mask.ndim != 2:
        raise InvalidInputError("mask must be a 2D uint8 array")
    if mask.shape != img.shape[:2]:
        raise InvalidInputError("mask must have as many rows and cols as img")
    if not np.isin(mask, LABELS).all():
        raise InvalidInputError(
            "mask element values must be GC_BGD, GC_FGD, GC_PR_BGD or GC_PR_FGD")


def init_mask_with_rect(mask, shape, rect) -> np.ndarray:
    """
    Seeds a mask from a rectangle: GC_PR_FGD inside, GC_BGD elsewhere.

    The rectangle is (x, y, width, height) and is clipped to the image.
    If `mask` already has the right shape and dtype it is filled in place,
    otherwise a new mask is allocated.
    """
    if rect is None or len(rect) != 4:
        raise InvalidInputError("rect must be given as (x, y, width, height)")
    rows, cols = shape
    if mask is None or mask.shape != (rows, cols) or mask.dtype != np.uint8:
        mask = np.empty((rows, cols), dtype=np.uint8)
    mask[:] = GC_BGD

    x, y, width, height = (int(v) for v in rect)
    x = max(0, x)
    y = max(0, y)
    width = min(width, cols - x)
    height = min(height, rows - y)
    if width > 0 and height > 0:
        mask[y:y + height, x:x + width] = GC_PR_FGD
    return mask


def is_background(mask: np.ndarray) -> np.ndarray:
    """Boolean grid of background-like pixels (GC_BGD or GC_PR_BGD)."""
    return (mask == GC_BGD) | (mask == GC_PR_BGD)


def is_probable(mask: np.ndarray) -> np.ndarray:
    """Boolean grid of the pixels the graph cut may relabel."""
    return (mask == GC_PR_BGD) | (mask == GC_PR_FGD)


def binary_mask(mask: np.ndarray) -> np.ndarray:
    """
    Converts a label mask to a 0/1 foreground mask (uint8).
    """
    return np.where(is_background(mask), 0, 1).astype(np.uint8)
