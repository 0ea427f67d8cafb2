from .clock import Clock, ensure_utc, utcnow
from .context import get_path, render_merge_tags
from .retry import compute_backoff

__all__ = [
    "Clock",
    "compute_backoff",
    "ensure_utc",
    "get_path",
    "render_merge_tags",
    "utcnow",
]
