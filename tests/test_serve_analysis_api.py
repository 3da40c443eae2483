"""Tests for the study, analysis and stream API endpoints."""

from __future__ import annotations

from typing import Any

import numpy as np
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from qanalytics.models import SortSubmission, StudyDefinition
from qanalytics.server.app import create_app

from conftest import make_study, make_submissions

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def app() -> FastAPI:
    return create_app(db_url="sqlite://")


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def definition() -> StudyDefinition:
    return make_study()


@pytest.fixture()
def submissions(definition: StudyDefinition) -> list[SortSubmission]:
    return make_submissions(definition, [6, 6])


def _payload(subs: list[SortSubmission]) -> list[dict[str, Any]]:
    return [s.model_dump() for s in subs]


@pytest.fixture()
def study_id(client: TestClient, definition: StudyDefinition) -> int:
    resp = client.post("/api/studies", json=definition.model_dump())
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.fixture()
def populated(
    client: TestClient, study_id: int, submissions: list[SortSubmission]
) -> int:
    resp = client.post(f"/api/studies/{study_id}/submissions", json=_payload(submissions))
    assert resp.status_code == 201
    return study_id


@pytest.fixture()
def opened(client: TestClient, populated: int) -> int:
    resp = client.post(f"/api/studies/{populated}/analysis", json={"factor_count": 2})
    assert resp.status_code == 201
    return populated


def _command(client: TestClient, study_id: int, **body: Any):  # type: ignore[no-untyped-def]
    return client.post(f"/api/studies/{study_id}/analysis/commands", json=body)


# ---------------------------------------------------------------------------
# Studies
# ---------------------------------------------------------------------------


class TestStudies:
    def test_create_and_fetch(
        self, client: TestClient, study_id: int, definition: StudyDefinition
    ) -> None:
        data = client.get(f"/api/studies/{study_id}").json()
        assert data["name"] == "Synthetic study"
        assert [s["id"] for s in data["statements"]] == definition.statement_ids
        assert data["distribution"]["counts"] == definition.distribution.counts
        assert data["participant_ids"] == []

    def test_unknown_study_404(self, client: TestClient) -> None:
        resp = client.get("/api/studies/999")
        assert resp.status_code == 404
        assert "999" in resp.json()["detail"]

    def test_distribution_mismatch_rejected(
        self, client: TestClient, definition: StudyDefinition
    ) -> None:
        body = definition.model_dump()
        body["statements"] = body["statements"][:-1]
        assert client.post("/api/studies", json=body).status_code == 422


class TestSubmissions:
    def test_accepted(
        self, client: TestClient, study_id: int, submissions: list[SortSubmission]
    ) -> None:
        resp = client.post(f"/api/studies/{study_id}/submissions", json=_payload(submissions))
        assert resp.status_code == 201
        assert resp.json() == {"accepted": 12, "participant_count": 12}
        roster = client.get(f"/api/studies/{study_id}").json()["participant_ids"]
        assert roster == [s.participant_id for s in submissions]

    def test_invalid_sort_lists_problems(
        self, client: TestClient, study_id: int, submissions: list[SortSubmission]
    ) -> None:
        bad = submissions[0].model_copy(deep=True)
        bad.ranks["s01"] = 9
        resp = client.post(
            f"/api/studies/{study_id}/submissions", json=_payload([bad, submissions[1]])
        )
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert list(detail["problems"]) == [bad.participant_id]
        # Nothing from the batch is stored
        assert client.get(f"/api/studies/{study_id}").json()["participant_ids"] == []

    def test_resubmission_conflicts(
        self, client: TestClient, populated: int, submissions: list[SortSubmission]
    ) -> None:
        resp = client.post(
            f"/api/studies/{populated}/submissions", json=_payload(submissions[:1])
        )
        assert resp.status_code == 409
        assert submissions[0].participant_id in resp.json()["detail"]


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class TestOpenAnalysis:
    def test_open_returns_snapshot(self, client: TestClient, populated: int) -> None:
        resp = client.post(f"/api/studies/{populated}/analysis", json={"factor_count": 2})
        assert resp.status_code == 201
        data = resp.json()
        assert data["revision"] == 0
        snapshot = data["snapshot"]
        assert snapshot["status"] == "unrotated"
        assert len(snapshot["loadings"]) == 12
        assert len(snapshot["loadings"][0]) == 2
        assert len(snapshot["factor_scores"]) == 2

    def test_default_factor_count(self, client: TestClient, populated: int) -> None:
        resp = client.post(f"/api/studies/{populated}/analysis", json={})
        assert resp.status_code == 201
        assert len(resp.json()["snapshot"]["eigenvalues"]) >= 1

    def test_centroid(self, client: TestClient, populated: int) -> None:
        resp = client.post(
            f"/api/studies/{populated}/analysis", json={"factor_count": 2, "method": "centroid"}
        )
        assert resp.json()["snapshot"]["extraction_method"] == "centroid"

    def test_too_many_factors(self, client: TestClient, populated: int) -> None:
        resp = client.post(f"/api/studies/{populated}/analysis", json={"factor_count": 12})
        assert resp.status_code == 422

    def test_needs_two_participants(
        self, client: TestClient, study_id: int, submissions: list[SortSubmission]
    ) -> None:
        client.post(f"/api/studies/{study_id}/submissions", json=_payload(submissions[:1]))
        resp = client.post(f"/api/studies/{study_id}/analysis", json={"factor_count": 1})
        assert resp.status_code == 422
        assert "At least 2" in resp.json()["detail"]

    def test_unknown_study(self, client: TestClient) -> None:
        assert client.post("/api/studies/42/analysis", json={}).status_code == 404

    def test_snapshot_before_open(self, client: TestClient, populated: int) -> None:
        resp = client.get(f"/api/studies/{populated}/analysis")
        assert resp.status_code == 404
        assert "No analysis open" in resp.json()["detail"]


class TestCommands:
    def test_rotate_then_commit(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=15)
        assert resp.status_code == 200
        assert resp.json()["revision"] == 1
        assert resp.json()["snapshot"]["status"] == "rotating"

        resp = _command(client, opened, command="commit")
        assert resp.json()["revision"] == 2
        assert resp.json()["snapshot"]["history_length"] == 1

    def test_rotate_needs_arguments(self, client: TestClient, opened: int) -> None:
        assert _command(client, opened, command="rotate", factor_a=0).status_code == 422

    def test_bad_factor_index(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="rotate", factor_a=0, factor_b=4, angle=5)
        assert resp.status_code == 422

    def test_unknown_command(self, client: TestClient, opened: int) -> None:
        assert _command(client, opened, command="spin").status_code == 422

    def test_auto_rotate_and_snapshot(self, client: TestClient, opened: int) -> None:
        rotated = _command(client, opened, command="auto_rotate").json()
        assert rotated["snapshot"]["status"] == "rotated"
        snapshot = client.get(f"/api/studies/{opened}/analysis").json()
        assert snapshot["revision"] == rotated["revision"]
        assert snapshot["loadings"] == rotated["snapshot"]["loadings"]

    def test_unknown_rotation_method(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="auto_rotate", method="promax")
        assert resp.status_code == 422

    def test_quartimax(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="auto_rotate", method="quartimax")
        assert resp.status_code == 200
        assert resp.json()["snapshot"]["status"] == "rotated"

    def test_empty_undo_conflicts(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="undo")
        assert resp.status_code == 409
        assert _command(client, opened, command="redo").status_code == 409

    def test_undo_redo(self, client: TestClient, opened: int) -> None:
        unrotated = client.get(f"/api/studies/{opened}/analysis").json()["loadings"]
        rotated = _command(client, opened, command="auto_rotate").json()["snapshot"]["loadings"]
        undone = _command(client, opened, command="undo").json()["snapshot"]
        np.testing.assert_allclose(undone["loadings"], unrotated, atol=1e-12)
        redone = _command(client, opened, command="redo").json()["snapshot"]
        np.testing.assert_allclose(redone["loadings"], rotated, atol=1e-12)

    def test_set_factor_count(self, client: TestClient, opened: int) -> None:
        resp = _command(client, opened, command="set_factor_count", factor_count=3)
        assert resp.status_code == 200
        assert len(resp.json()["snapshot"]["loadings"][0]) == 3
        assert _command(client, opened, command="set_factor_count").status_code == 422

    def test_finalize_locks(self, client: TestClient, opened: int) -> None:
        assert _command(client, opened, command="finalize").status_code == 200
        resp = _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=5)
        assert resp.status_code == 409
        assert client.post(f"/api/studies/{opened}/analysis", json={}).status_code == 409


class TestPersistence:
    def test_session_restored_from_database(
        self, app: FastAPI, client: TestClient, opened: int
    ) -> None:
        _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=20)
        _command(client, opened, command="commit")
        rotated = _command(client, opened, command="auto_rotate").json()

        app.state.registry.discard(str(opened))
        restored = client.get(f"/api/studies/{opened}/analysis").json()
        assert restored["revision"] == rotated["revision"]
        assert restored["history_cursor"] == 2
        np.testing.assert_allclose(
            restored["loadings"], rotated["snapshot"]["loadings"], atol=1e-12
        )

    def test_uncommitted_rotation_not_persisted(
        self, app: FastAPI, client: TestClient, opened: int
    ) -> None:
        unrotated = client.get(f"/api/studies/{opened}/analysis").json()["loadings"]
        _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=30)

        app.state.registry.discard(str(opened))
        restored = client.get(f"/api/studies/{opened}/analysis").json()
        assert restored["status"] == "unrotated"
        # Revision 1 announced the rotation that was dropped
        assert restored["revision"] == 2
        np.testing.assert_allclose(restored["loadings"], unrotated, atol=1e-12)

    def test_restored_session_resumes_above_published_revisions(
        self, app: FastAPI, client: TestClient, opened: int
    ) -> None:
        first = _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=10)
        second = _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=10)
        assert [first.json()["revision"], second.json()["revision"]] == [1, 2]

        app.state.registry.discard(str(opened))
        resp = _command(client, opened, command="auto_rotate")
        assert resp.json()["revision"] == 4


class TestReopen:
    def test_reopen_continues_revisions(self, client: TestClient, opened: int) -> None:
        _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=15)
        _command(client, opened, command="commit")
        resp = client.post(f"/api/studies/{opened}/analysis", json={"factor_count": 3})
        assert resp.status_code == 201
        assert resp.json()["revision"] == 3
        assert resp.json()["snapshot"]["status"] == "unrotated"
        assert _command(client, opened, command="auto_rotate").json()["revision"] == 4

    def test_reopen_after_restart_continues_revisions(
        self, app: FastAPI, client: TestClient, opened: int
    ) -> None:
        _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=15)
        _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=15)
        app.state.registry.discard(str(opened))
        resp = client.post(f"/api/studies/{opened}/analysis", json={"factor_count": 2})
        assert resp.json()["revision"] == 3

    def test_parallel_rule(self, app: FastAPI, client: TestClient, populated: int) -> None:
        app.state.settings.factor_count_rule = "parallel"
        resp = client.post(f"/api/studies/{populated}/analysis", json={})
        assert resp.status_code == 201
        assert len(resp.json()["snapshot"]["loadings"][0]) == 2


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------


class TestStream:
    def test_snapshot_then_updates(self, client: TestClient, opened: int) -> None:
        with client.websocket_connect(f"/api/studies/{opened}/analysis/stream") as ws:
            first = ws.receive_json()
            assert first["type"] == "snapshot"
            assert first["revision"] == 0

            _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=10)
            delta = ws.receive_json()
            assert delta["type"] == "delta"
            assert delta["revision"] == 1
            assert set(delta) == {"type", "study_id", "revision", "rotation_matrix", "loadings"}

            _command(client, opened, command="commit")
            update = ws.receive_json()
            assert update["type"] == "snapshot"
            assert update["revision"] == 2
            assert update["history_length"] == 1

    def test_reopen_keeps_subscribers(self, client: TestClient, opened: int) -> None:
        with client.websocket_connect(f"/api/studies/{opened}/analysis/stream") as ws:
            assert ws.receive_json()["revision"] == 0
            _command(client, opened, command="rotate", factor_a=0, factor_b=1, angle=10)
            assert ws.receive_json()["revision"] == 1

            client.post(f"/api/studies/{opened}/analysis", json={"factor_count": 3})
            update = ws.receive_json()
            assert update["type"] == "snapshot"
            assert update["revision"] == 2
            assert len(update["loadings"][0]) == 3

            _command(client, opened, command="auto_rotate")
            assert ws.receive_json()["revision"] == 3

    def test_no_analysis_closes(self, client: TestClient, populated: int) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/api/studies/{populated}/analysis/stream") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4404
