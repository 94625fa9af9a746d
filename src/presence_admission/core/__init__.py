"""Core services: rate limiting, device trust, motion guard, policy cache and
evaluation, signing, audit, and the admission pipeline that orchestrates them.
"""
