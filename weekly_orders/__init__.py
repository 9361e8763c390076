"""
                Weekly Orders

Backend for a weekly staff food-ordering service: per-day menu counters
per user, a live weekly summary kept consistent across processes, and a
scheduled summary e-mail.
"""

__version__ = "1.0.0"
