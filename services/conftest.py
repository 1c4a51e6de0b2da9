# Point both services at throwaway SQLite files before their modules build engines
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="storefront-services-")
os.environ["INVENTORY_DATABASE_URL"] = f"sqlite:///{_DB_DIR}/inventory.db"
os.environ["PAYMENTS_DATABASE_URL"] = f"sqlite:///{_DB_DIR}/payments.db"


@pytest.fixture
def inventory_db():
    from services.inventory import repo

    repo.Base.metadata.drop_all(repo.engine)
    repo.Base.metadata.create_all(repo.engine)
    yield repo
    repo.Base.metadata.drop_all(repo.engine)


@pytest.fixture
def payments_db():
    from services.payments import repo

    repo.Base.metadata.drop_all(repo.engine)
    repo.Base.metadata.create_all(repo.engine)
    yield repo
    repo.Base.metadata.drop_all(repo.engine)
