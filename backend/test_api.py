"""
End-to-end tests for the HTTP API: upload, charts, rendering, filters,
drill-down, layout editing and live dataset replacement.
"""

import uuid

import pytest
from fastapi.testclient import TestClient

from main import app

CSV = b"date,region,product,sales,cost\n2024-01-01,E,A,10,4\n2024-01-02,W,B,7,2\n2024-01-01,E,B,5,1\n"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def headers():
    return {"X-Session-Id": f"test-{uuid.uuid4().hex}"}


@pytest.fixture
def uploaded(client, headers):
    resp = client.post("/upload", headers=headers, files={"file": ("sales.csv", CSV, "text/csv")})
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
def page_id(client, headers, uploaded):
    return client.get("/api/dashboard", headers=headers).json()["currentPageId"]


@pytest.fixture
def bar_chart(client, headers, page_id):
    body = {"type": "bar", "title": "Sales by region", "xAxis": "region", "yAxis": "sales"}
    resp = client.post(f"/api/pages/{page_id}/charts", headers=headers, json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestUpload:
    """Tests for CSV upload and table listing."""

    def test_upload_infers_schema(self, uploaded):
        assert uploaded["ok"]
        assert uploaded["rows"] == 3
        types = {c["name"]: c["type"] for c in uploaded["schema"]["columns"]}
        assert types == {
            "date": "datetime",
            "region": "text",
            "product": "text",
            "sales": "numeric",
            "cost": "numeric",
        }

    def test_duplicate_upload_rejected(self, client, headers, uploaded):
        resp = client.post("/upload", headers=headers, files={"file": ("again.csv", CSV, "text/csv")})
        assert resp.status_code == 409
        assert resp.json()["duplicate"]

    def test_missing_session_header(self, client):
        resp = client.post("/upload", files={"file": ("sales.csv", CSV, "text/csv")})
        assert resp.status_code == 400

    def test_tables_and_preview(self, client, headers, uploaded):
        tables = client.get("/tables", headers=headers).json()["tables"]
        assert [t["name"] for t in tables] == ["sales"]
        assert tables[0]["active"]
        preview = client.get("/table/sales/preview?limit=2", headers=headers).json()
        assert preview["returned_rows"] == 2
        assert preview["has_more"]
        assert preview["rows"][0]["region"] == "E"

    def test_upload_creates_first_page(self, client, headers, uploaded):
        project = client.get("/api/dashboard", headers=headers).json()["project"]
        assert [p["name"] for p in project["pages"]] == ["Page 1"]
        assert "data" not in project["dataSources"][0]


class TestRender:
    """Tests for page rendering through the filter pipeline."""

    def test_bar_panel(self, client, headers, bar_chart):
        render = client.get("/api/render", headers=headers).json()
        panel = render["panels"][0]
        assert panel["chartId"] == bar_chart["id"]
        assert panel["rows"] == [{"name": "E", "value": 15}, {"name": "W", "value": 7}]
        assert render["totalRows"] == 3

    def test_unbound_panel_warns(self, client, headers, page_id):
        client.post(f"/api/pages/{page_id}/charts", headers=headers, json={"type": "pie"})
        panel = client.get("/api/render", headers=headers).json()["panels"][0]
        assert panel["isEmpty"]
        assert "Configure a value field." in panel["warnings"]

    def test_patch_chart(self, client, headers, page_id, bar_chart):
        resp = client.patch(
            f"/api/pages/{page_id}/charts/{bar_chart['id']}",
            headers=headers,
            json={"aggregation": "count"},
        )
        assert resp.json()["aggregation"] == "count"
        panel = client.get("/api/render", headers=headers).json()["panels"][0]
        assert panel["rows"][0] == {"name": "E", "value": 2}

    def test_patch_chart_invalid(self, client, headers, page_id, bar_chart):
        resp = client.patch(
            f"/api/pages/{page_id}/charts/{bar_chart['id']}",
            headers=headers,
            json={"type": "not-a-chart"},
        )
        assert resp.status_code == 400

    def test_unknown_page(self, client, headers, uploaded):
        assert client.get("/api/render?pageId=nope", headers=headers).status_code == 404

    def test_deep_formula_does_not_break_page(self, client, headers, page_id, bar_chart):
        """One chart with a pathological formula still lets the page render."""
        body = {"type": "bar", "xAxis": "region", "formula": "(" * 3000 + "sales" + ")" * 3000}
        client.post(f"/api/pages/{page_id}/charts", headers=headers, json=body)
        resp = client.get("/api/render", headers=headers)
        assert resp.status_code == 200
        panels = resp.json()["panels"]
        assert panels[0]["rows"] == [{"name": "E", "value": 15}, {"name": "W", "value": 7}]
        assert all(d["value"] == 0 for d in panels[1]["rows"])

    def test_template_skips_unknown_types(self, client, headers, page_id):
        body = {"layouts": [{"type": "hologram"}, {"type": "kpi"}]}
        resp = client.post(f"/api/pages/{page_id}/template", headers=headers, json=body)
        assert resp.status_code == 200
        assert [c["type"] for c in resp.json()["charts"]] == ["kpi"]


class TestFilters:
    """Tests for dashboard, cross and panel-local filters."""

    def test_dashboard_filter(self, client, headers, bar_chart):
        render = client.put("/api/filters", headers=headers, json=[{"column": "product", "values": ["B"]}]).json()
        assert render["filteredRows"] == 2
        assert render["panels"][0]["rows"] == [{"name": "W", "value": 7}, {"name": "E", "value": 5}]

    def test_cross_filter_toggle(self, client, headers, bar_chart):
        body = {"chartId": bar_chart["id"], "field": "region", "value": "E"}
        render = client.post("/api/cross-filter", headers=headers, json=body).json()
        assert render["crossFilter"]["matchingRows"] == 2
        assert render["crossFilter"]["totalRows"] == 3
        assert render["panels"][0]["rows"] == [{"name": "E", "value": 15}]

        render = client.post("/api/cross-filter", headers=headers, json=body).json()
        assert render["crossFilter"] is None

    def test_cross_filter_disabled(self, client, headers, bar_chart):
        client.post("/api/cross-filter/enabled", headers=headers, json={"enabled": False})
        body = {"chartId": bar_chart["id"], "field": "region", "value": "E"}
        render = client.post("/api/cross-filter", headers=headers, json=body).json()
        assert render["crossFilter"] is None

    def test_local_filter(self, client, headers, bar_chart):
        body = {"rangeColumn": "sales", "rangeMin": 6}
        render = client.put(f"/api/charts/{bar_chart['id']}/local-filter", headers=headers, json=body).json()
        panel = render["panels"][0]
        assert panel["localFilterActive"]
        assert panel["rows"] == [{"name": "E", "value": 10}, {"name": "W", "value": 7}]

    def test_filter_options(self, client, headers, bar_chart):
        options = client.get(f"/api/charts/{bar_chart['id']}/filter-options", headers=headers).json()
        assert options["numeric"]["sales"] == {"min": 5, "max": 10}
        assert options["categorical"]["region"] == ["E", "W"]


class TestDrillDown:
    """Tests for the drill-down endpoints."""

    @pytest.fixture
    def opened(self, client, headers, bar_chart):
        body = {"chartId": bar_chart["id"], "field": "region", "value": "E"}
        resp = client.post("/api/drill-down", headers=headers, json=body)
        assert resp.status_code == 200, resp.text
        return resp.json()

    def test_open(self, opened):
        assert len(opened["rows"]) == 2
        assert opened["depth"] == 1
        # both rows share one date, so "date" is not offered
        assert opened["selectedField"] == "product"

    def test_deeper_and_back(self, client, headers, opened):
        client.post("/api/drill-down/field", headers=headers, json={"field": "product"})
        deeper = client.post("/api/drill-down/deeper", headers=headers, json={"value": "B"}).json()
        assert deeper["depth"] == 2
        assert deeper["context"]["breadcrumbs"] == [{"field": "region", "value": "E"}]
        back = client.post("/api/drill-down/back", headers=headers).json()
        assert back["depth"] == 1

    def test_export(self, client, headers, opened):
        resp = client.get("/api/drill-down/export", headers=headers)
        assert resp.headers["content-type"].startswith("text/csv")
        assert "drill-down-region-E.csv" in resp.headers["content-disposition"]

    def test_closed(self, client, headers, opened):
        client.delete("/api/drill-down", headers=headers)
        assert client.get("/api/drill-down", headers=headers).status_code == 404


class TestLayout:
    """Tests for edit mode, deletion with undo, and grid resize."""

    def test_delete_and_undo(self, client, headers, page_id, bar_chart):
        client.post("/api/edit-mode", headers=headers, json={"enabled": True})
        resp = client.delete(f"/api/pages/{page_id}/charts/{bar_chart['id']}", headers=headers).json()
        assert resp["canUndo"]
        restored = client.post("/api/undo", headers=headers).json()["restored"]
        assert restored == bar_chart

    def test_grid_resize_requires_edit_mode(self, client, headers, bar_chart):
        body = {"deltaWidth": 1}
        resp = client.post(f"/api/charts/{bar_chart['id']}/grid-resize", headers=headers, json=body).json()
        assert not resp["ok"]
        client.post("/api/edit-mode", headers=headers, json={"enabled": True})
        resp = client.post(f"/api/charts/{bar_chart['id']}/grid-resize", headers=headers, json=body).json()
        assert resp["chart"]["width"] == 2

    def test_free_form_drag(self, client, headers, page_id, bar_chart):
        client.post("/api/edit-mode", headers=headers, json={"enabled": True})
        page = client.post(f"/api/pages/{page_id}/layout-mode", headers=headers, json={"mode": "free"}).json()
        chart = page["charts"][0]
        start = {"pageId": page_id, "panelId": chart["id"], "pointerX": chart["x"], "pointerY": chart["y"]}
        assert client.post("/api/gestures/drag", headers=headers, json=start).json()["ok"]
        client.post("/api/gestures/move", headers=headers, json={"pointerX": 205, "pointerY": 98})
        committed = client.post("/api/gestures/end", headers=headers).json()["committed"]
        assert (committed["x"], committed["y"]) == (200, 100)


class TestDatasets:
    """Tests for live replacement, calculated columns and statistics."""

    def test_replace_rows(self, client, headers, uploaded, bar_chart):
        rows = [{"region": "N", "sales": 1}, {"region": "N", "sales": 2}]
        resp = client.put(f"/api/datasets/{uploaded['sourceId']}/rows", headers=headers, json={"rows": rows})
        assert resp.json()["rows"] == 2
        panel = client.get("/api/render", headers=headers).json()["panels"][0]
        assert panel["rows"] == [{"name": "N", "value": 3}]

    def test_replace_unknown_source(self, client, headers, uploaded):
        resp = client.put("/api/datasets/nope/rows", headers=headers, json={"rows": []})
        assert resp.status_code == 404

    def test_calculated_column(self, client, headers, uploaded):
        body = {"name": "margin", "formula": "sales - cost"}
        resp = client.post(f"/api/datasets/{uploaded['sourceId']}/calculated-columns", headers=headers, json=body)
        data = resp.json()
        assert data["ok"]
        assert "margin" in [c["name"] for c in data["schema"]["columns"]]

    def test_validate_formula(self, client, headers, uploaded):
        resp = client.post("/api/formulas/validate", headers=headers, json={"formula": "sales -"})
        assert not resp.json()["ok"]
        deep = "(" * 3000 + "sales" + ")" * 3000
        resp = client.post("/api/formulas/validate", headers=headers, json={"formula": deep})
        assert resp.status_code == 200
        assert not resp.json()["ok"]

    def test_statistics_and_sample(self, client, headers, uploaded):
        stats = client.get(f"/api/datasets/{uploaded['sourceId']}/statistics", headers=headers).json()
        assert stats["rowCount"] == 3
        sample = client.get(f"/api/datasets/{uploaded['sourceId']}/sample?n=2", headers=headers).json()
        assert len(sample["rows"]) == 2
        assert sample["totalRows"] == 3

    def test_delete_allows_reupload(self, client, headers, uploaded):
        client.delete(f"/api/datasets/{uploaded['sourceId']}", headers=headers)
        resp = client.post("/upload", headers=headers, files={"file": ("sales.csv", CSV, "text/csv")})
        assert resp.status_code == 200
