import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.engine import Engine

from db.engine import engine
from db.models import Base


def clear_dev_db(db_engine: Engine = engine) -> None:
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


if __name__ == "__main__":
    clear_dev_db()
    print("Database cleared.")
