"""Record file format parsers."""
