#!/usr/bin/env python3
"""Convenience runner for the segment league server.

Usage:
    python run.py [--host HOST] [--port PORT] [--database-url URL] [--debug]
"""
from segment_league.main import main

if __name__ == "__main__":
    main()
