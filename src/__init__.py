"""
Literacy Impact Monitoring

Async record storage, EGRA learner scoring, a static geography reference and
the geographic impact-aggregation engine built on top of them.
"""

__version__ = "0.1.0"
