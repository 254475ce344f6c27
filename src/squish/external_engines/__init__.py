from .common import ensure_smaller, pick_smaller
from .images import ImageTransformer
from .pdf import PDFTransformer
from .video import VideoTransformer

__all__ = [
    "ImageTransformer",
    "PDFTransformer",
    "VideoTransformer",
    "ensure_smaller",
    "pick_smaller",
]
