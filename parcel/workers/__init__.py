from .config import MimeMatcher, PreviewBuildError, PreviewCommand, PreviewConfig, Previewer, current_platform
from .previews import GeneratePreview, PreviewWorker, Stop, start_worker

__all__ = [
    "GeneratePreview",
    "MimeMatcher",
    "PreviewBuildError",
    "PreviewCommand",
    "PreviewConfig",
    "PreviewWorker",
    "Previewer",
    "Stop",
    "current_platform",
    "start_worker",
]
