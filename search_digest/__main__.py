#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Entry point for running search_digest as a module.
Allows execution via: python -m search_digest
"""

from search_digest import run_cli

if __name__ == "__main__":
    run_cli()
