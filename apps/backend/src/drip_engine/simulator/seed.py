"""Demo CRM data: a few leads, properties, templates and drip definitions."""

from __future__ import annotations

from ..automation.definitions import RawDefinition, RawStep
from ..automation.schema import DefinitionStatus, MessageTemplate
from .state import SimulatorState

PROPERTIES = {
    "PROP_001": {"id": "PROP_001", "name": "Sunset Towers", "code": "SUNT", "city": "Los Angeles"},
    "PROP_002": {"id": "PROP_002", "name": "Downtown Lofts", "code": "DTLF", "city": "Seattle"},
    "PROP_003": {"id": "PROP_003", "name": "Riverside Garden", "code": "RVSD", "city": "Austin"},
}

UNITS = {"UNIT_101": "10A", "UNIT_201": "204", "UNIT_301": "A1"}

USERS = {
    "USR_001": {"id": "USR_001", "full_name": "Sarah Jenkins", "role": "Agent", "team_id": "TM_001"},
    "USR_002": {"id": "USR_002", "full_name": "Mike Ross", "role": "Agent", "team_id": "TM_002"},
    "USR_003": {"id": "USR_003", "full_name": "Jessica Pearson", "role": "Manager", "team_id": "TM_001"},
    "USR_004": {"id": "USR_004", "full_name": "AI Bot", "role": "System", "team_id": "TM_003"},
}


def _lead(lead_id: str, first: str, last: str, email: str, phone: str, **fields) -> dict:
    lead = {
        "id": lead_id,
        "first_name": first,
        "last_name": last,
        "full_name": f"{first} {last}",
        "email": email,
        "phone": phone,
        "tags": [],
        "notes": "",
        "last_inbound_at": "",
    }
    lead.update(fields)
    if lead.get("unit_id") in UNITS:
        lead["unit_number"] = UNITS[lead["unit_id"]]
    return lead


LEADS = {
    "LEA_001": _lead(
        "LEA_001", "John", "Smith", "john.smith@example.com", "5550100",
        property_id="PROP_001", unit_id="UNIT_101", lead_score=85, lead_owner_id="USR_001",
        team_id="TM_001", source_id="SRC_001", source_name="Zillow", original_channel="ILS",
        notes="Has a golden retriever", last_inbound_at="2025-12-01T09:00:00Z",
    ),
    "LEA_002": _lead(
        "LEA_002", "Emily", "Davis", "emily.d@example.com", "5550101",
        property_id="PROP_002", unit_id="UNIT_201", lead_score=92, lead_owner_id="USR_002",
        team_id="TM_002", source_id="SRC_002", source_name="Website Chat", original_channel="Web Chat",
        notes="Looking for quiet unit", last_inbound_at="2025-12-02T14:00:00Z",
    ),
    "LEA_003": _lead(
        "LEA_003", "Robert", "Ford", "r.ford@example.com", "5550102",
        property_id="PROP_001", lead_score=20, lead_owner_id="USR_001", team_id="TM_001",
        source_id="SRC_003", source_name="Walk-In", original_channel="Walk-In",
    ),
    "LEA_004": _lead(
        "LEA_004", "Michael", "Chen", "m.chen@example.com", "5550103",
        property_id="PROP_003", unit_id="UNIT_301", lead_score=95, lead_owner_id="USR_002",
        team_id="TM_002", source_id="SRC_005", source_name="Apartments.com", original_channel="ILS",
        tags=["Interested in 1BHK"], last_inbound_at="2025-12-04T14:00:00Z",
    ),
}

TEMPLATES = [
    MessageTemplate(
        id="TMPL_WELCOME",
        name="Welcome Email",
        type="email",
        subject="Welcome to {{property_name}}",
        body="Hi {{first_name}},<br/>Thanks for your interest in {{property_name}}. Our team will call you shortly.",
    ),
    MessageTemplate(
        id="TMPL_SMS_CHECKIN",
        name="Check-in SMS",
        type="sms",
        body="Hi {{first_name}}, quick check-in re: your tour at {{property_name}}. Reply YES to confirm.",
    ),
    MessageTemplate(
        id="TMPL_FEEDBACK",
        name="Feedback Request",
        type="email",
        subject="How did the tour go?",
        body="Hi {{first_name}},<br/>Thanks for touring. Tell us how we did: {{feedback_link}}",
    ),
    MessageTemplate(
        id="TMPL_REVIEW_LINK",
        name="Review Link",
        type="email",
        subject="Share your review",
        body="Hi {{first_name}}, please leave a review: {{review_link}}",
    ),
    MessageTemplate(
        id="TMPL_ZILLOW_AUTO",
        name="Zillow Auto SMS",
        type="sms",
        body="Thanks for your Zillow inquiry. An agent will call you shortly.",
    ),
]


def demo_definitions() -> list[RawDefinition]:
    return [
        RawDefinition(
            id="AUTO_001",
            name="New Lead Welcome",
            trigger_event="Lead Created",
            status=DefinitionStatus.ACTIVE,
            created_by_user_id="USR_003",
            steps=[
                RawStep(id="STEP_001", step_order=1, type="Action", action="Send Email",
                        content_template_id="TMPL_WELCOME"),
                RawStep(id="STEP_002", step_order=2, type="Delay", action="Wait", delay_hours=24),
                RawStep(id="STEP_003", step_order=3, type="Action", action="Send SMS",
                        content_template_id="TMPL_SMS_CHECKIN"),
                RawStep(id="STEP_004", step_order=4, type="Action", action="Create Task",
                        condition_json='{"task_title":"Manual Follow Up"}'),
            ],
        ),
        RawDefinition(
            id="AUTO_002",
            name="Post-Tour Feedback",
            trigger_event="Tour Completed",
            status=DefinitionStatus.ACTIVE,
            created_by_user_id="USR_003",
            steps=[
                RawStep(id="STEP_005", step_order=1, type="Delay", action="Wait", delay_hours=2),
                RawStep(id="STEP_006", step_order=2, type="Action", action="Send Email",
                        content_template_id="TMPL_FEEDBACK"),
                RawStep(id="STEP_007", step_order=3, type="Condition", action="Check Score",
                        condition_json='{"score":">8"}'),
                RawStep(id="STEP_008", step_order=4, type="Action", action="Send Email",
                        content_template_id="TMPL_REVIEW_LINK"),
            ],
        ),
        RawDefinition(
            id="AUTO_008",
            name="Zillow Lead Fast-Response",
            trigger_event="Lead Source = Zillow",
            status=DefinitionStatus.ACTIVE,
            created_by_user_id="USR_003",
            steps=[
                RawStep(id="STEP_009", step_order=1, type="Action", action="Send SMS",
                        content_template_id="TMPL_ZILLOW_AUTO"),
                RawStep(id="STEP_010", step_order=2, type="Action", action="Assign Agent",
                        condition_json='{"team":"TM_001"}'),
            ],
        ),
        RawDefinition(
            id="AUTO_010",
            name="Winter Special Drip",
            trigger_type="Segment",
            trigger_event="Tag = 'Interested in 1BHK'",
            status=DefinitionStatus.DRAFT,
            created_by_user_id="USR_002",
        ),
    ]


def seed_state(state: SimulatorState) -> SimulatorState:
    """Populate an empty state with the demo leads, properties, users and templates."""
    state.properties.update({k: dict(v) for k, v in PROPERTIES.items()})
    state.users.update({k: dict(v) for k, v in USERS.items()})
    state.leads.update({k: {**v, "tags": list(v["tags"])} for k, v in LEADS.items()})
    state.templates.update({t.id: t.model_copy() for t in TEMPLATES})
    return state
