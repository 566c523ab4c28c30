#!/usr/bin/env python3
"""
Main entry point for running the vuload CLI as a module.

Usage:
    python3 -m vuload run vuload/config/catalog.yaml
    python3 -m vuload run my-run.yaml -e BASE_URL=http://localhost:8080
    python3 -m vuload check my-run.yaml
"""

from .cli import main

if __name__ == "__main__":
    main()
