"""
Monitoring core: rule evaluators, alert deduplication, notification fan-out
and the periodic sweep.
"""
