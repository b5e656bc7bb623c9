"""Cross-cutting pieces: errors, logging and background side effects."""
