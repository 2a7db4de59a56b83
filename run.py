#!/usr/bin/env python3
"""Backup service runner"""
import sys
from vaultkeeper.main import main

if __name__ == '__main__':
    sys.exit(main())
