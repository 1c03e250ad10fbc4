"""
Worker Service package: asynchronous consumers of checkout events.
"""
