"""Query functions for ReleasePilot database records.

Each module exposes async functions that take an AsyncSession as their
first argument. Functions add, flush and read; the calling service owns
the transaction boundary.
"""
