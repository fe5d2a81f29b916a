"""
Create all execution engine tables in the database

This script creates:
1. government_projects
2. states
3. project_executions

Uses the ORM metadata (Alembic migrations in database/migrations are the
production path; this is for local setups).
"""

import os
import sys
from dotenv import load_dotenv

load_dotenv()

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from execution_engine.database import create_session_factory  # noqa: E402
from execution_engine.models import Base  # noqa: E402

print("=" * 70)
print("Execution Engine - Create All Tables")
print("=" * 70)

database_url = os.getenv("DATABASE_URL")
if not database_url:
    print("\nERROR: DATABASE_URL not set")
    sys.exit(1)

print(f"\nDB: {database_url[:40]}...")

session_factory = create_session_factory(database_url)
Base.metadata.create_all(bind=session_factory.kw["bind"])

for table in Base.metadata.sorted_tables:
    print(f"  - {table.name}")

print("\nDone")
