"""Migration templates."""

from .registry import TemplateRegistry

__all__ = ["TemplateRegistry"]
