"""
batchledger: resumable batch classification with a durable ledger.

Runs a fixed collection of text items through an external classifier over
many hours, recording exactly one result per item and surviving crashes,
kills and restarts without duplicate work.
"""

__version__ = "0.1.0"
