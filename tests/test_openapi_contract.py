import json
from pathlib import Path

from automail.main import app


def test_openapi_paths_snapshot():
    snapshot_path = Path(__file__).parent / "snapshots" / "openapi_paths_snapshot.json"
    expected_paths = json.loads(snapshot_path.read_text(encoding="utf-8"))
    actual_paths = sorted(app.openapi()["paths"].keys())
    assert actual_paths == expected_paths


def test_openapi_uses_camel_case_bodies():
    schemas = app.openapi()["components"]["schemas"]
    step_fields = set(schemas["AutomationStepIn"]["properties"])
    assert {"stepIndex", "delayMinutes", "htmlBody", "useAiGeneration", "skipCondition"} <= step_fields
    assert "step_index" not in step_fields
