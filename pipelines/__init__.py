"""
PIPELINES - Scripted jobs the daemon runs on a schedule

Each pipeline is a module runnable with `python -m pipelines.<name>` that
exits 0 on success and prints a JSON summary to stdout.
"""
