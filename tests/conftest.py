"""Shared test fixtures and helpers.

Fixture modules live in tests/fixtures and are re-exported here so every
test directory sees them:

- ledger: in-memory LedgerDB, MockClock, pre-catalogued batches
- classifiers: scripted fake classifiers and a simulated crash
- sources: CSV writers and JobSettings builders

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os

from hypothesis import Phase, Verbosity, settings

from tests.fixtures.classifiers import scripted_classifier
from tests.fixtures.ledger import ledger_db, mock_clock
from tests.fixtures.sources import make_engine, source_csv

__all__ = [
    "ledger_db",
    "make_engine",
    "mock_clock",
    "scripted_classifier",
    "source_csv",
]

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
