"""Run reports (JSON + Markdown) and exit status."""
