import json
from pathlib import Path

from onboarding_billing.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_checkout_documents_error_envelope():
    responses = app.openapi()["paths"]["/checkout"]["post"]["responses"]
    for status_code in ("400", "403", "409", "429", "500"):
        assert status_code in responses
    assert "ErrorOut" in json.dumps(responses["429"])
