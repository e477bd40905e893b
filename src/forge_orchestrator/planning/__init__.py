"""Stage plan definitions for the ten-stage project workflow."""
