"""cntx - a continuously updated semantic index over a source tree."""

__version__ = "0.1.0"
