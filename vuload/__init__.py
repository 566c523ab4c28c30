"""
vuload: a synthetic load-generation engine.

Drives scripted HTTP scenarios with concurrent virtual users, accumulates
counters, rates and timing samples in a shared metric sink, evaluates
statistical thresholds and produces a JSON run summary whose exit code gates
CI.
"""

__version__ = "0.1.0"
