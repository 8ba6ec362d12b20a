"""Shared pytest fixtures for batchledger tests.

Available fixtures:
- ledger_db, mock_clock: fresh in-memory ledger and controllable clock
- scripted_classifier: deterministic fake classifier
- source_csv, make_engine: test sources and engines wired to the above
"""
