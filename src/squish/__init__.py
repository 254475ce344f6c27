"""squish: keep images, videos and PDFs small as they land on disk."""

__version__ = "0.1.0"

from .asset_types import PDF, Image, RemoteURL, Unknown, Video
from .config import EngineConfig, EngineSettings, QueueConfig
from .engine import Engine, OptimiseOptions, RequestHandle
from .errors import SquishError
from .optimiser import OptimiserSnapshot, OptimiserState

__all__ = [
    "PDF",
    "Engine",
    "EngineConfig",
    "EngineSettings",
    "Image",
    "OptimiseOptions",
    "OptimiserSnapshot",
    "OptimiserState",
    "QueueConfig",
    "RemoteURL",
    "RequestHandle",
    "SquishError",
    "Unknown",
    "Video",
    "__version__",
]
