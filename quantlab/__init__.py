"""
QuantLab signal core.

Strategies emit raw end-of-day signals; the ensemble engine merges them into
consensus signals, the ranker scores pending signals, the allocator sizes the
top-ranked ones against a capital budget, and the lifecycle manager moves
signals and paper positions through their states.
"""

__version__ = "0.1.0"
