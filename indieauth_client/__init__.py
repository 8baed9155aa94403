"""IndieAuth client - discover IndieAuth endpoints and sign in with a profile URL."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("indieauth-client")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "OutputHandler",
]


# Lazy imports keep `import indieauth_client` free of httpx/click
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
