"""Natural-language spreadsheet analysis executed in an in-process Python sandbox."""

__version__ = "0.1.0"
