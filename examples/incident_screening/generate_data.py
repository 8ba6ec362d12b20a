#!/usr/bin/env python3
"""
Generate a synthetic incident export for trying out batchledger.

Creates a CSV with configurable row count (default 2,000) in wide form:
- IncidentID: Stable identifier (INC-000001, ...)
- Region: One of four regions, copied onto every item as an attribute
- NarrativeCME: Medical examiner narrative (blank for ~5% of rows)
- NarrativeLE: Law enforcement narrative

Usage:
    python generate_data.py              # 2,000 rows
    python generate_data.py 50000        # 50,000 rows
"""

import csv
import random
import sys
from pathlib import Path

REGIONS = ["north", "south", "east", "west"]

CME_PHRASES = [
    "Decedent found unresponsive at residence.",
    "History of depression noted by family.",
    "Toxicology pending at time of report.",
    "No evidence of trauma observed.",
    "Note left at scene addressed to spouse.",
]

LE_PHRASES = [
    "Officers responded to a welfare check.",
    "Neighbor reported hearing an argument the previous evening.",
    "Firearm recovered at the scene.",
    "No signs of forced entry.",
    "Victim had recently lost employment.",
]


def _narrative(phrases: list[str], rng: random.Random) -> str:
    return " ".join(rng.sample(phrases, k=rng.randint(2, 4)))


def generate_data(num_rows: int = 2_000, output_path: Path | None = None, seed: int = 7) -> None:
    """Generate a reproducible incident CSV."""
    if output_path is None:
        output_path = Path(__file__).parent / "incidents.csv"

    rng = random.Random(seed)
    print(f"Generating {num_rows:,} incidents to {output_path}...")  # noqa: T201

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["IncidentID", "Region", "NarrativeCME", "NarrativeLE"])

        for i in range(1, num_rows + 1):
            cme = "" if rng.random() < 0.05 else _narrative(CME_PHRASES, rng)
            writer.writerow([f"INC-{i:06d}", rng.choice(REGIONS), cme, _narrative(LE_PHRASES, rng)])

            if i % 10_000 == 0:
                print(f"  {i:,} rows written...")  # noqa: T201

    print(f"Generated {num_rows:,} rows")  # noqa: T201


if __name__ == "__main__":
    num_rows = int(sys.argv[1]) if len(sys.argv) > 1 else 2_000

    if num_rows < 1 or num_rows > 1_000_000:
        print("Error: Row count must be between 1 and 1,000,000", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    generate_data(num_rows)
