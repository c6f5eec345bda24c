import os
import tempfile

import pytest

# Point the app at a throwaway database before app.config is imported.
os.environ['DISPATCH_DB_PATH'] = os.path.join(tempfile.mkdtemp(prefix='dispatch-test-'), 'dispatch.db')

from fastapi.testclient import TestClient  # noqa: E402

from app.main import app  # noqa: E402


@pytest.fixture(scope='module')
def client():
    with TestClient(app) as test_client:
        yield test_client
