"""Operator command-line interface (``python -m scalingad.cli``)."""
