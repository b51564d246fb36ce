"""Create the schema and run provisioning once: ``python db/create_db.py``."""

import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from config import configure_logging, settings  # noqa: E402
from database import SessionLocal, init_db  # noqa: E402
from provisioning import provision_admin, seed_demo_network  # noqa: E402

logger = logging.getLogger("create_db")


def main():
    configure_logging()
    init_db()
    with SessionLocal() as session:
        provision_admin(session, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        created = seed_demo_network(session)
    logger.info("Database created and populated with %s flight(s)", created)


if __name__ == "__main__":
    main()
