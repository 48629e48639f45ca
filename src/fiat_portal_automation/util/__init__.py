from .files import persist_qr_copy, sanitize_filename_part
from .money import format_amount, parse_amount

__all__ = ["format_amount", "parse_amount", "persist_qr_copy", "sanitize_filename_part"]
