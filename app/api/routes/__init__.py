from . import generations

__all__ = ["generations"]
