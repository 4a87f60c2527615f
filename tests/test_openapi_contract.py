import json
from pathlib import Path

from crm_automation.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_tenant_routes_document_error_envelope():
    schema = app.openapi()
    create_rule = schema["paths"]["/workflows/rules"]["post"]
    assert {"400", "409", "422"} <= set(create_rule["responses"])
    assert "ErrorOut" in schema["components"]["schemas"]
