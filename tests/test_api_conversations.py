"""
HTTP tests for the conversation blueprint.

Coverage:
  1. Access gate wiring (401 / 400 / 404 / 403)
  2. Answer, edit, skip, follow-up and bulk writes
  3. Progress view after writes
  4. Phase-analysis upsert and listing
  5. Workspace purge rights
"""

from __future__ import annotations

import pytest

from intake.core.exceptions import ConsistencyError
from intake.models import db
from intake.models.catalog import Question
from intake.services.answer_resolver import AnswerResolver


@pytest.fixture()
def owner_headers(owner, auth_headers):
    return auth_headers(owner)


def _progress(client, workspace, headers, **params):
    res = client.get(
        "/api/v1/progress",
        query_string={"business_id": workspace.id, **params},
        headers=headers,
    )
    assert res.status_code == 200, res.get_json()
    return res.get_json()


def _state(payload, question_id):
    return next(c for c in payload["conversations"] if c["question_id"] == question_id)


# ═════════════════════════════════════════════════════════════════════════════
# Access gate
# ═════════════════════════════════════════════════════════════════════════════


class TestAccess:

    def test_missing_token_is_401(self, client, workspace):
        res = client.get("/api/v1/progress", query_string={"business_id": workspace.id})

        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_invalid_token_is_401(self, client, workspace):
        res = client.get(
            "/api/v1/progress",
            query_string={"business_id": workspace.id},
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert res.status_code == 401

    def test_missing_business_id_is_400(self, client, owner_headers):
        res = client.get("/api/v1/progress", headers=owner_headers)

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_non_integer_business_id_is_400(self, client, owner_headers):
        res = client.get("/api/v1/progress", query_string={"business_id": "abc"}, headers=owner_headers)

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_fractional_business_id_is_400(self, client, catalog, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id + 0.9, "question_id": 1, "answer_text": "x"},
            headers=owner_headers,
        )

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_workspace_is_404(self, client, owner_headers):
        res = client.get("/api/v1/progress", query_string={"business_id": 9999}, headers=owner_headers)

        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_stranger_is_403(self, client, workspace, make_user, auth_headers):
        stranger = make_user("member")

        res = client.get(
            "/api/v1/progress",
            query_string={"business_id": workspace.id},
            headers=auth_headers(stranger),
        )

        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_viewer_cannot_answer(self, client, catalog, workspace, make_user, auth_headers):
        viewer = make_user("viewer")

        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "nope"},
            headers=auth_headers(viewer),
        )

        assert res.status_code == 403

    def test_viewer_can_read(self, client, catalog, workspace, make_user, auth_headers):
        viewer = make_user("viewer")

        payload = _progress(client, workspace, auth_headers(viewer))

        assert payload["access"]["role"] == "viewer"
        assert payload["access"]["capabilities"] == ["view"]


# ═════════════════════════════════════════════════════════════════════════════
# Writes
# ═════════════════════════════════════════════════════════════════════════════


class TestWrites:

    def test_answer_then_progress(self, client, catalog, owner, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "We bake bread"},
            headers=owner_headers,
        )

        assert res.status_code == 201
        body = res.get_json()
        assert body["action"] == "created"
        assert body["conversation"]["owner_id"] == owner.id
        assert body["conversation"]["scope_id"] == workspace.id

        payload = _progress(client, workspace, owner_headers)
        assert _state(payload, 1)["completion_status"] == "complete"
        assert _state(payload, 1)["latest_answer"] == "We bake bread"
        assert payload["progress"]["answered"] == 1
        assert payload["progress"]["next_question"]["question_id"] == 2
        assert payload["business_info"]["location"]["display"] == "Lyon, France"

    def test_collaborator_writes_under_owner(self, client, catalog, owner, workspace, collaborator, auth_headers):
        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "from collaborator"},
            headers=auth_headers(collaborator),
        )

        assert res.status_code == 201
        assert res.get_json()["conversation"]["owner_id"] == owner.id

    def test_edit_returns_200_and_replaces(self, client, catalog, workspace, owner_headers):
        for text in ("first", "second"):
            client.post(
                "/api/v1/conversations",
                json={"business_id": workspace.id, "question_id": 1, "answer_text": text},
                headers=owner_headers,
            )

        res = client.post(
            "/api/v1/conversations",
            json={
                "business_id": workspace.id,
                "question_id": 1,
                "answer_text": "edited",
                "metadata": {"is_edit": True},
            },
            headers=owner_headers,
        )

        assert res.status_code == 200
        body = res.get_json()
        assert body["action"] == "edited_and_replaced"
        assert body["deleted_count"] == 2

        state = _state(_progress(client, workspace, owner_headers), 1)
        assert state["total_answers"] == 1
        assert state["latest_answer"] == "edited"
        assert state["is_edited"] is True

    def test_invalid_payload_is_400(self, client, catalog, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1},
            headers=owner_headers,
        )

        assert res.status_code == 400
        assert "Invalid payload" in res.get_json()["error"]
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_skip(self, client, catalog, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations/skip",
            json={"business_id": workspace.id, "question_id": 1},
            headers=owner_headers,
        )

        assert res.status_code == 200
        payload = _progress(client, workspace, owner_headers)
        assert _state(payload, 1)["completion_status"] == "skipped"
        assert payload["skipped"] == 1
        assert payload["progress"]["next_question"]["question_id"] == 2

    def test_skip_requires_question_id(self, client, workspace, owner_headers):
        res = client.post("/api/v1/conversations/skip", json={"business_id": workspace.id}, headers=owner_headers)

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_followup(self, client, catalog, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations/followup-question",
            json={"business_id": workspace.id, "question_id": 1, "followup_question_text": "Which breads?"},
            headers=owner_headers,
        )

        assert res.status_code == 200
        flow = _state(_progress(client, workspace, owner_headers), 1)["conversation_flow"]
        assert flow == [{"type": "question", "text": "Which breads?", "timestamp": flow[0]["timestamp"],
                         "is_followup": True}]

    def test_bulk(self, client, catalog, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations/bulk",
            json={
                "business_id": workspace.id,
                "answers": [
                    {"question_id": 1, "answer_text": "one"},
                    {"question_id": "x", "answer_text": "bad"},
                    {"question_id": 2, "answer_text": "two"},
                ],
            },
            headers=owner_headers,
        )

        assert res.status_code == 201
        body = res.get_json()
        assert body["count"] == 2
        assert body["failed"] == 1
        assert [r["status"] for r in body["results"]] == ["edited", "failed", "edited"]

    def test_bulk_requires_list(self, client, workspace, owner_headers):
        res = client.post(
            "/api/v1/conversations/bulk",
            json={"business_id": workspace.id, "answers": "one"},
            headers=owner_headers,
        )

        assert res.status_code == 400

    def test_consistency_error_maps_to_500(self, client, catalog, workspace, owner_headers, monkeypatch):
        def _fail(self, question_id, text, *, metadata=None):
            raise ConsistencyError("edit failed", question_id=int(question_id), attempts=2)

        monkeypatch.setattr(AnswerResolver, "edit", _fail)

        res = client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "x", "metadata": {"is_edit": True}},
            headers=owner_headers,
        )

        assert res.status_code == 500
        body = res.get_json()
        assert body["code"] == "ERR_CONSISTENCY"
        assert body["details"]["retryable"] is True


# ═════════════════════════════════════════════════════════════════════════════
# Progress filters
# ═════════════════════════════════════════════════════════════════════════════


class TestProgressView:

    def test_empty_workspace(self, client, catalog, workspace, owner_headers):
        payload = _progress(client, workspace, owner_headers)

        assert payload["phase"] == "all"
        assert payload["total_questions"] == 5
        assert payload["progress"]["current_phase"] == "initial"
        assert payload["progress"]["percentage"] == 0

    def test_phase_filter_is_cumulative(self, client, catalog, workspace, owner_headers):
        payload = _progress(client, workspace, owner_headers, phase="essential")

        assert payload["phase"] == "essential"
        assert {c["phase"] for c in payload["conversations"]} == {"initial", "essential"}
        assert payload["progress"]["phase_order"] == ["initial", "essential"]

    def test_deactivated_question_keeps_its_history(self, client, catalog, workspace, owner_headers):
        client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "We bake bread"},
            headers=owner_headers,
        )
        catalog[1].is_active = False
        db.session.commit()

        payload = _progress(client, workspace, owner_headers)

        state = _state(payload, 1)
        assert state["is_deleted"] is True
        assert state["question_text"] == "Question 1?"
        assert state["phase"] == "initial"
        assert state["latest_answer"] == "We bake bread"
        assert payload["deleted"] == 1

    def test_question_outside_phase_order_stays_visible(self, client, catalog, workspace, owner_headers):
        db.session.add(Question(id=6, question_text="Question 6?", phase="advanced", order=1,
                                severity="mandatory", is_active=True))
        db.session.commit()
        client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 6, "answer_text": "Export plans"},
            headers=owner_headers,
        )

        payload = _progress(client, workspace, owner_headers)

        state = _state(payload, 6)
        assert state["completion_status"] == "complete"
        assert state["is_deleted"] is False
        assert payload["conversations"][-1]["question_id"] == 6
        assert payload["total_questions"] == 6
        assert payload["progress"]["current_phase"] == "initial"

    def test_invalid_phase_is_400(self, client, catalog, workspace, owner_headers):
        res = client.get(
            "/api/v1/progress",
            query_string={"business_id": workspace.id, "phase": "legendary"},
            headers=owner_headers,
        )

        assert res.status_code == 400

    def test_conversations_alias(self, client, catalog, workspace, owner_headers):
        res = client.get("/api/v1/conversations", query_string={"business_id": workspace.id}, headers=owner_headers)

        assert res.status_code == 200
        assert res.get_json()["total_questions"] == 5


# ═════════════════════════════════════════════════════════════════════════════
# Phase analysis
# ═════════════════════════════════════════════════════════════════════════════


class TestPhaseAnalysis:

    def _save(self, client, workspace, headers, **overrides):
        body = {
            "business_id": workspace.id,
            "phase": "initial",
            "analysis_type": "swot",
            "analysis_name": "SWOT",
            "analysis_data": {"strengths": ["bread"]},
        }
        body.update(overrides)
        return client.post("/api/v1/conversations/phase-analysis", json=body, headers=headers)

    def test_save_then_replace(self, client, workspace, owner_headers):
        first = self._save(client, workspace, owner_headers)
        second = self._save(client, workspace, owner_headers, analysis_data={"strengths": ["cakes"]})

        assert first.status_code == 200
        assert first.get_json()["upserted"] is True
        assert second.get_json()["modified"] is True

        res = client.get(
            "/api/v1/conversations/phase-analysis",
            query_string={"business_id": workspace.id},
            headers=owner_headers,
        )
        body = res.get_json()
        assert body["total_analyses"] == 1
        assert body["analysis_results"][0]["analysis_data"] == {"strengths": ["cakes"]}
        assert list(body["results_by_phase"]) == ["initial"]

    def test_missing_data_is_400(self, client, workspace, owner_headers):
        res = self._save(client, workspace, owner_headers, analysis_data=None)

        assert res.status_code == 400

    def test_bad_generated_at_is_400(self, client, workspace, owner_headers):
        res = self._save(client, workspace, owner_headers, generated_at="soon")

        assert res.status_code == 400

    def test_analysis_appears_in_progress(self, client, catalog, workspace, owner_headers):
        self._save(client, workspace, owner_headers)

        payload = _progress(client, workspace, owner_headers)

        assert payload["phase_analysis"]["initial"][0]["analysis_type"] == "swot"

    def test_phase_filter_includes_earlier_analyses(self, client, catalog, workspace, owner_headers):
        self._save(client, workspace, owner_headers)
        self._save(client, workspace, owner_headers, phase="essential", analysis_type="pestel")
        self._save(client, workspace, owner_headers, phase="good", analysis_type="radar")

        payload = _progress(client, workspace, owner_headers, phase="essential")

        assert sorted(payload["phase_analysis"]) == ["essential", "initial"]


# ═════════════════════════════════════════════════════════════════════════════
# Purge
# ═════════════════════════════════════════════════════════════════════════════


class TestPurge:

    def test_owner_purges_everything(self, client, catalog, workspace, owner_headers):
        client.post(
            "/api/v1/conversations",
            json={"business_id": workspace.id, "question_id": 1, "answer_text": "x"},
            headers=owner_headers,
        )
        client.post(
            "/api/v1/conversations/phase-analysis",
            json={
                "business_id": workspace.id, "phase": "initial", "analysis_type": "swot",
                "analysis_name": "SWOT", "analysis_data": {"a": 1},
            },
            headers=owner_headers,
        )

        res = client.delete("/api/v1/conversations", json={"business_id": workspace.id}, headers=owner_headers)

        assert res.status_code == 200
        body = res.get_json()
        assert body["deleted"] == 1
        assert body["deleted_analyses"] == 1
        assert _progress(client, workspace, owner_headers)["progress"]["answered"] == 0

    def test_collaborator_cannot_purge(self, client, workspace, collaborator, auth_headers):
        res = client.delete(
            "/api/v1/conversations",
            json={"business_id": workspace.id},
            headers=auth_headers(collaborator),
        )

        assert res.status_code == 403
