#!/usr/bin/env python3
"""Development runner"""
import os

from backupflow.cli import main

if __name__ == '__main__':
    # Use development config (./data) for local testing
    os.environ.setdefault('BACKUPFLOW_ENV', 'development')

    main()
