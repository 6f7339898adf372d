__version__ = "0.3.1"

from .tracing import configure_tracing

configure_tracing()

__all__ = ["__version__"]
