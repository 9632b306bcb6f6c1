"""
Oko: position reconciliation and guard engine for leveraged linear derivatives.
"""
__version__ = "1.0.0"
