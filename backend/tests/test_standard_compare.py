from __future__ import annotations

from io import BytesIO
import json
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from policydiff.config import settings
from policydiff.db import STANDARD_COLLECTION, get_record, update_record
from policydiff.main import create_app
from policydiff.workflow import CozeWorkflowClient

CHECKLIST = [
    {"id": 1, "name": "体检套餐包含血常规", "status": "满足", "matched": True, "evidence": "第2页", "analysis": "已包含"},
    {"id": 2, "name": "提供报告解读", "status": "不满足", "matched": False, "evidence": "", "analysis": "未提及"},
]


@pytest.fixture()
def coze_requests(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> list[httpx.Request]:
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path}/standard.db")
    monkeypatch.setattr(settings, "storage_root", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "coze_api_token", "pat_test_token")
    monkeypatch.setattr(settings, "auth_enabled", False)

    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"data": json.dumps(CHECKLIST, ensure_ascii=False)})

    monkeypatch.setattr(
        "policydiff.main.get_workflow_client",
        lambda: CozeWorkflowClient(
            settings,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            sleep=lambda _seconds: None,
        ),
    )
    return requests


def _compare(client: TestClient, **overrides: object) -> httpx.Response:
    body: dict[str, object] = {
        "file_url": "https://cdn.example.com/体检方案.pdf",
        "city": "北京",
        "file_name": "体检方案.pdf",
        "username": "admin",
    }
    body.update(overrides)
    return client.post("/standard-compare", json=body)


def test_standard_compare_creates_record(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        response = _compare(client)

    assert response.status_code == 200
    payload = response.json()
    assert payload["schema"] == "checklist"
    assert payload["structured"] == CHECKLIST
    assert payload["overwritten"] is False

    sent = json.loads(coze_requests[0].content)
    assert sent["workflow_id"] == settings.coze_standard_workflow_id
    assert sent["parameters"] == {"file_name": "https://cdn.example.com/体检方案.pdf"}

    record = get_record(STANDARD_COLLECTION, payload["record_id"])
    assert record is not None
    assert record["city"] == "北京"
    assert record["standard_items"] == CHECKLIST
    assert record["status"] == "done"


def test_standard_compare_without_city_is_not_saved(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        response = _compare(client, city=None)
        listing = client.get("/standard-compare-records", params={"username": "admin"})

    assert response.status_code == 200
    assert response.json()["record_id"] is None
    assert listing.json()["total"] == 0


def test_standard_compare_rejects_relative_url(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        response = _compare(client, file_url="/uploads/a.pdf")
    assert response.status_code == 400
    assert coze_requests == []


def test_overwrite_updates_owned_record_and_resets_review(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        record_id = _compare(client).json()["record_id"]
        update_record(STANDARD_COLLECTION, record_id, {"is_verified": True})

        response = _compare(client, mode="overwrite", record_id=record_id, file_name="体检方案-修订版.pdf")
        listing = client.get("/standard-compare-records", params={"username": "admin"})

    assert response.json()["record_id"] == record_id
    assert response.json()["overwritten"] is True
    assert listing.json()["total"] == 1

    record = get_record(STANDARD_COLLECTION, record_id)
    assert record is not None
    assert record["file_name"] == "体检方案-修订版.pdf"
    assert record["is_verified"] is False


def test_overwrite_of_foreign_or_missing_record_creates_new(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        foreign_id = _compare(client, username="other").json()["record_id"]

        foreign = _compare(client, mode="overwrite", record_id=foreign_id)
        missing = _compare(client, mode="overwrite", record_id="no-such-record")

    for response in (foreign, missing):
        assert response.json()["overwritten"] is False
        assert response.json()["record_id"] not in {foreign_id, "no-such-record"}

    untouched = get_record(STANDARD_COLLECTION, foreign_id)
    assert untouched is not None
    assert untouched["username"] == "other"


def test_listing_filters_by_review_state(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        first = _compare(client).json()["record_id"]
        _compare(client, city="上海", file_name="上海体检.pdf")
        reviewed = client.patch(
            f"/standard-compare-records/{first}",
            json={"username": "admin", "is_verified": True},
        )

        verified = client.get("/standard-compare-records", params={"username": "admin", "is_verified": "true"})
        unverified = client.get("/standard-compare-records", params={"username": "admin", "is_verified": "false"})

    assert reviewed.json()["data"]["is_verified"] is True
    assert [item["id"] for item in verified.json()["data"]] == [first]
    assert [item["city"] for item in unverified.json()["data"]] == ["上海"]


def test_create_and_patch_records(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        created = client.post(
            "/standard-compare-records",
            json={
                "city": "深圳",
                "file_name": "深圳.pdf",
                "file_url": "https://cdn.example.com/深圳.pdf",
                "raw_coze_response": {"data": CHECKLIST},
                "username": "admin",
            },
        )
        record_id = created.json()["data"]["id"]
        bad_url = client.patch(
            f"/standard-compare-records/{record_id}",
            json={"username": "admin", "file_url": "ftp://cdn.example.com/a.pdf"},
        )
        rederived = client.patch(
            f"/standard-compare-records/{record_id}",
            json={"username": "admin", "raw_coze_response": {"data": CHECKLIST[:1]}},
        )
        deleted = client.delete(f"/standard-compare-records/{record_id}", params={"username": "admin"})

    assert created.json()["data"]["standard_items"] == CHECKLIST
    assert bad_url.status_code == 400
    assert rederived.json()["data"]["standard_items"] == CHECKLIST[:1]
    assert deleted.json()["deleted"] == 1


def test_patch_with_null_required_fields_keeps_stored_values(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        record_id = _compare(client).json()["record_id"]
        response = client.patch(
            f"/standard-compare-records/{record_id}",
            json={"username": "admin", "city": None, "file_name": None, "file_url": None, "is_verified": None},
        )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["city"] == "北京"
    assert data["file_name"] == "体检方案.pdf"
    assert data["file_url"] == "https://cdn.example.com/体检方案.pdf"
    assert data["is_verified"] is False


def test_update_record_ignores_null_for_required_columns(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        record_id = _compare(client).json()["record_id"]

    assert update_record(STANDARD_COLLECTION, record_id, {"status": None, "standard_items": None}) == 1
    record = get_record(STANDARD_COLLECTION, record_id)
    assert record is not None
    assert record["status"] == "done"
    assert record["standard_items"] is None



def test_create_record_requires_http_url(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        response = client.post(
            "/standard-compare-records",
            json={"city": "深圳", "file_name": "a.pdf", "file_url": "a.pdf", "username": "admin"},
        )
    assert response.status_code == 400


def test_export_writes_one_row_per_checklist_item(coze_requests: list[httpx.Request]) -> None:
    with TestClient(create_app()) as client:
        _compare(client)
        response = client.get("/standard-compare-records/export", params={"username": "admin"})

    assert response.status_code == 200
    sheet = load_workbook(BytesIO(response.content))["标准对比"]
    rows = list(sheet.iter_rows(values_only=True))
    assert rows[0][5] == "标准项"
    assert len(rows) == 3
    assert rows[1][0] == "北京"
    assert rows[1][5] == "体检套餐包含血常规"
    assert rows[1][7] == "是"
    assert rows[2][7] == "否"
    assert rows[2][9] == "未提及"
