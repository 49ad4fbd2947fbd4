"""Terminal output."""
from hive.output.formatter import OutputFormatter

__all__ = ["OutputFormatter"]
