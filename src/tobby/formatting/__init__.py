"""Outbound text formatting."""

from tobby.formatting.message_split import split_message, split_text

__all__ = ["split_message", "split_text"]
