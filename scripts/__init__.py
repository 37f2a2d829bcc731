"""
Scripts Module

Utility scripts for database setup.

Available scripts:
    - seed_data.py: Creates a demo IT support workflow, users and a ticket

Usage:
    python -m scripts.seed_data
"""
