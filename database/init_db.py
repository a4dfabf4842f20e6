import os
import sys

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from quote_compare import create_app
from quote_compare.db import get_db, init_db
from quote_compare.demo_data import seed_demo_inquiry


app = create_app()


if __name__ == "__main__":
    with app.app_context():
        init_db()
        if os.environ.get("SEED_DEMO_INQUIRY", "0").strip().lower() in {"1", "true", "yes", "sim"}:
            db = get_db()
            inquiry_id = seed_demo_inquiry(db)
            db.commit()
            print(f"Demo inquiry created: {inquiry_id}.")
    print("Database initialized.")
