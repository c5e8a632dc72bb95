"""
Tests: template authoring, graph validation and standard template seeding.
"""

import copy

import pytest

import app.services.workflow_engine as engine
from app.core.exceptions import (
    ConflictError,
    InvalidStateError,
    InvalidTemplateError,
    NotFoundError,
    ValidationError,
)
from app.services import workflow_template_service as svc


def _definition(base, **overrides):
    data = copy.deepcopy(base)
    data.update(overrides)
    return data


def _two_stage(name="Two Stage", entity_type="rfi", **extra):
    return {
        "name": name,
        "entity_type": entity_type,
        "stages": [
            {"stage_number": 1, "stage_name": "Review", "assignment_rule": {"type": "user", "user_id": 1}},
            {"stage_number": 2, "stage_name": "Answer", "assignment_rule": {"type": "user", "user_id": 2}},
        ],
        "transitions": [
            {"from_stage": 1, "to_stage": 2, "action": "approve"},
            {"from_stage": 2, "to_stage": None, "action": "approve"},
        ],
        **extra,
    }


# ═════════════════════════════════════════════════════════════════════════════
# Graph validation
# ═════════════════════════════════════════════════════════════════════════════


class TestValidateGraph:
    def test_normalizes_stages(self):
        stages, transitions = svc.validate_graph(
            [{"stage_number": 1, "stage_name": " Review ", "actions": ["send_notification"] * 2}],
            [{"from_stage": 1, "to_stage": None, "action": "approve", "name": "  "}],
        )
        assert stages[0]["stage_name"] == "Review"
        assert stages[0]["stage_type"] == "approval"
        assert stages[0]["assignment_rule"] == {}
        assert stages[0]["actions"] == ["send_notification"]
        assert transitions[0]["name"] is None

    @pytest.mark.parametrize("stages, transitions", [
        ([{"stage_number": 0, "stage_name": "A"}], []),
        ([{"stage_number": 1, "stage_name": ""}], []),
        ([{"stage_number": 1, "stage_name": "A", "stage_type": "vote"}], []),
        ([{"stage_number": 1, "stage_name": "A"}, {"stage_number": 1, "stage_name": "B"}], []),
        ([{"stage_number": 1, "stage_name": "A", "sla_hours": 48, "escalation_hours": 24}], []),
        ([{"stage_number": 1, "stage_name": "A", "sla_hours": -1}], []),
        ([{"stage_number": 1, "stage_name": "A", "assignment_rule": {"type": "team"}}], []),
        ([{"stage_number": 1, "stage_name": "A",
           "escalation_rule": {"type": "auto", "action": "notify"}}], []),
        ([{"stage_number": 1, "stage_name": "A", "actions": ["launch_rocket"]}], []),
        ([{"stage_number": 1, "stage_name": "A"}],
         [{"from_stage": 1, "to_stage": 2, "action": "approve"}]),
        ([{"stage_number": 1, "stage_name": "A"}],
         [{"from_stage": 1, "to_stage": None, "action": "escalate"}]),
        ([{"stage_number": 1, "stage_name": "A"}],
         [{"from_stage": None, "to_stage": None, "action": "approve"}]),
        ([{"stage_number": 1, "stage_name": "A"}, {"stage_number": 2, "stage_name": "B"}],
         [{"from_stage": None, "to_stage": 2, "action": "complete"}]),
        ([{"stage_number": 1, "stage_name": "A"}],
         [{"from_stage": 1, "to_stage": None, "action": "approve"},
          {"from_stage": 1, "to_stage": 1, "action": "approve"}]),
    ])
    def test_rejects_broken_graphs(self, stages, transitions):
        with pytest.raises(InvalidTemplateError):
            svc.validate_graph(stages, transitions)


# ═════════════════════════════════════════════════════════════════════════════
# Authoring
# ═════════════════════════════════════════════════════════════════════════════


class TestAuthoring:
    def test_create_with_graph(self, submittal_template):
        assert submittal_template["stage_count"] == 4
        assert submittal_template["transition_count"] == 9
        assert submittal_template["is_default"] is True
        numbers = [s["stage_number"] for s in submittal_template["stages"]]
        assert numbers == [1, 2, 3, 4]
        distribution = submittal_template["stages"][3]
        assert distribution["requires_response"] is False

    def test_header_validation(self, submittal_definition):
        with pytest.raises(ValidationError):
            svc.create_template(_definition(submittal_definition, name=""))
        with pytest.raises(ValidationError):
            svc.create_template(_definition(submittal_definition, entity_type="invoice"))
        with pytest.raises(ValidationError):
            svc.create_template(_definition(submittal_definition, is_default="yes"))

    def test_duplicate_name(self, submittal_template, submittal_definition):
        with pytest.raises(ConflictError):
            svc.create_template(_definition(submittal_definition, is_default=False))

    def test_new_default_demotes_previous(self, submittal_template, submittal_definition):
        newer = svc.create_template(_definition(submittal_definition, name="Fast Track Submittal"))
        assert newer["is_default"] is True
        assert svc.get_template(submittal_template["id"])["is_default"] is False

    def test_set_default(self, submittal_template, submittal_definition):
        other = svc.create_template(_definition(submittal_definition, name="Alt", is_default=False))
        svc.set_default_template(other["id"])
        assert svc.get_template(other["id"])["is_default"] is True
        assert svc.get_template(submittal_template["id"])["is_default"] is False

    def test_inactive_cannot_be_default(self, submittal_template):
        svc.deactivate_template(submittal_template["id"])
        with pytest.raises(InvalidStateError):
            svc.set_default_template(submittal_template["id"])
        with pytest.raises(InvalidStateError):
            svc.update_template(submittal_template["id"], {"is_default": True})

    def test_update_metadata(self, submittal_template):
        updated = svc.update_template(submittal_template["id"], {"name": "Renamed", "description": "v2"})
        assert updated["name"] == "Renamed"
        assert updated["description"] == "v2"

    def test_update_graph_while_unused(self, submittal_template):
        two = _two_stage(entity_type="submittal")
        updated = svc.update_template(
            submittal_template["id"],
            {"stages": two["stages"], "transitions": two["transitions"]},
        )
        assert updated["stage_count"] == 2
        assert updated["transition_count"] == 2

    def test_graph_change_needs_both_parts(self, submittal_template):
        with pytest.raises(ValidationError):
            svc.update_template(submittal_template["id"], {"stages": []})

    def test_graph_locked_once_used(self, project, submittal_template):
        engine.start_workflow("submittal", "S-T1", project_id=project.id)
        two = _two_stage(entity_type="submittal")
        with pytest.raises(ConflictError):
            svc.update_template(
                submittal_template["id"],
                {"stages": two["stages"], "transitions": two["transitions"]},
            )
        with pytest.raises(ConflictError):
            svc.delete_template(submittal_template["id"])

    def test_delete_unused(self):
        template = svc.create_template(_two_stage())
        svc.delete_template(template["id"])
        with pytest.raises(NotFoundError):
            svc.get_template(template["id"])

    def test_deactivated_template_keeps_running_instances(self, project, submittal_template):
        inst = engine.start_workflow("submittal", "S-T2", project_id=project.id)
        svc.deactivate_template(submittal_template["id"])
        moved = engine.transition(inst["id"], "approve")
        assert moved["current_stage"]["stage_name"] == "Architect Review"

    def test_list_templates(self, submittal_template):
        svc.create_template(_two_stage())
        retired = svc.create_template(_two_stage(name="Retired"))
        svc.deactivate_template(retired["id"])

        assert len(svc.list_templates()) == 2
        assert len(svc.list_templates(include_inactive=True)) == 3
        assert [t["name"] for t in svc.list_templates(entity_type="rfi")] == ["Two Stage"]
        with pytest.raises(ValidationError):
            svc.list_templates(entity_type="invoice")


# ═════════════════════════════════════════════════════════════════════════════
# Standard templates
# ═════════════════════════════════════════════════════════════════════════════


class TestSeed:
    def test_seed_creates_one_default_per_entity_type(self):
        result = svc.seed_default_templates()
        assert len(result["created"]) == 5
        assert result["skipped"] == []
        defaults = [t for t in svc.list_templates() if t["is_default"]]
        assert sorted(t["entity_type"] for t in defaults) == [
            "change_order", "drawing", "punch_item", "rfi", "submittal",
        ]

    def test_seed_is_idempotent(self):
        svc.seed_default_templates()
        again = svc.seed_default_templates()
        assert again["created"] == []
        assert len(again["skipped"]) == 5
        assert len(svc.list_templates(include_inactive=True)) == 5

    def test_seed_keeps_existing_default(self, submittal_template):
        svc.seed_default_templates()
        submittals = svc.list_templates(entity_type="submittal")
        defaults = [t["name"] for t in submittals if t["is_default"]]
        assert defaults == [submittal_template["name"]]

    def test_seeded_submittal_runs_end_to_end(self, project, users):
        svc.seed_default_templates()
        inst = engine.start_workflow("submittal", "S-SEED", project_id=project.id)
        assert inst["current_stage"]["stage_name"] == "GC Review"
        for _ in range(3):
            inst = engine.transition(inst["id"], "approve")
        assert inst["current_stage"]["stage_name"] == "Distribution"
        done = engine.transition(inst["id"], "complete")
        assert done["status"] == "completed"
