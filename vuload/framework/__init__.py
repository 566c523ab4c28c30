"""
Core engine: metric sink, thresholds, virtual users, scenario scheduling and
the run controller.
"""
