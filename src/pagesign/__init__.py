"""PageSign: field overlay and guided signing for PDF templates."""

__version__ = "0.1.0"
