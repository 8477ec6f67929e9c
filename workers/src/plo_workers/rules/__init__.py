"""Anomaly rules: condition algebra, evaluation context, engine and default catalogue."""
