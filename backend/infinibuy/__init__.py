"""
Infinibuy Trading Core

Scheduled split-buy strategies for US equities on the KIS open API.
"""

__version__ = "1.0.0"
