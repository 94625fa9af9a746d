"""Presence admission pipeline.

Multi-factor check-in verification that renders an ACCEPTED / REVIEW / REJECTED
decision and a signed integrity verdict for every submission.
"""

__version__ = "0.1.0"
