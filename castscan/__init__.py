"""
Core package init for castscan.

Clusters per-frame face descriptors from a video into identities and
summarizes each identity's on-screen timeline and best shot.
"""

__all__ = [
    "attribution",
    "clustering",
    "pipeline",
    "config",
    "errors",
    "io_utils",
    "session_io",
    "types",
]

__version__ = "0.1.0"
