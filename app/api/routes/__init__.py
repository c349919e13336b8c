from . import builds

__all__ = ["builds"]
