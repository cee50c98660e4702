#!/usr/bin/env python3
"""
Setup script for the Compound-Guard demo.
Initializes the SQLite database and seeds one verifiable compounding job.

Optionally imports additional inventory lots from a CSV file:
    python setup_demo.py path/to/inventory.csv
"""

import logging
import sys


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("Compound-Guard Demo Setup")
    print("Compounding verification pipeline")
    print("=" * 60)
    print()

    from compound_guard.db.import_data import import_inventory_csv, seed_demo_data
    from compound_guard.db.sqlite_store import SQLiteCompoundingStore

    # Step 1: Create the schema
    print("Step 1: Initializing SQLite database...")
    print("-" * 40)
    store = SQLiteCompoundingStore()
    print(f"  Database: {store.db_path}")

    # Step 2: Seed demo records
    print("\nStep 2: Seeding demo patient, formula, inventory and job...")
    print("-" * 40)
    seeded = seed_demo_data(store)

    imported = 0
    if len(sys.argv) > 1:
        print("\nStep 3: Importing inventory CSV...")
        print("-" * 40)
        imported = import_inventory_csv(sys.argv[1], store)

    print("\n" + "=" * 60)
    print("Setup Complete!")
    print("=" * 60)
    print(f"  - Demo job:        {seeded['job_id']}")
    print(f"  - Company formula: {seeded['formula_id']}")
    if imported:
        print(f"  - Inventory lots:  {imported:>6} imported")
    print()
    print("To verify the demo job:")
    print(f"  python -c \"from compound_guard.graph import run_pipeline; "
          f"from compound_guard.db import SQLiteCompoundingStore; "
          f"print(run_pipeline('{seeded['job_id']}', store=SQLiteCompoundingStore()))\"")
    print()


if __name__ == "__main__":
    main()
