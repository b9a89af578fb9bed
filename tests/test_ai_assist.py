import pytest

from pulsecrm.core.config import settings
from pulsecrm.services.ai_service import AIProviderError, parse_model_output
from pulsecrm.schemas.ai import AIMessagesOut
from pulsecrm.schemas.segment import SegmentRulesIn


def _register(client, *, email: str, full_name: str = "Marketer"):
    return client.post(
        "/auth/register",
        json={"email": email, "full_name": full_name, "password": "password123"},
    )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _seed_buyers(client) -> None:
    for name, amounts in (("Ada", ["4000.00", "3000.00"]), ("Bola", ["1500.00"]), ("Chi", [])):
        customer = client.post("/customers", json={"name": name, "email": f"{name.lower()}@example.com"})
        assert customer.status_code == 201, customer.text
        for amount in amounts:
            order = client.post("/orders", json={"customer_id": customer.json()["id"], "amount": amount})
            assert order.status_code == 201, order.text


def test_segment_rules_from_description(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])

    res = client.post(
        "/ai/segment-rules",
        json={"description": "Customers who spent over 5000 and have not purchased in over 3 months"},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    assert res.json() == {
        "conditions": [
            {"field": "totalSpent", "operator": ">", "value": "5000"},
            {"field": "lastPurchaseDate", "operator": "<", "value": "90"},
        ],
        "operator": "AND",
    }


def test_segment_rules_with_or_and_visit_counts(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])

    res = client.post(
        "/ai/segment-rules",
        json={"description": "Shoppers with at least 3 visits or who spent more than 2,500"},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["operator"] == "OR"
    assert {"field": "visitCount", "operator": ">=", "value": "3"} in body["conditions"]
    assert {"field": "totalSpent", "operator": ">", "value": "2500"} in body["conditions"]


def test_generated_rules_can_be_saved_as_a_segment(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])
    _seed_buyers(client)

    rules = client.post(
        "/ai/segment-rules",
        json={"description": "customers who spent over 5000"},
        headers=headers,
    ).json()
    segment = client.post("/segments", json={"name": "Generated", "rules": rules}, headers=headers)
    assert segment.status_code == 201, segment.text
    assert segment.json()["audience_size"] == 1


def test_campaign_messages_have_three_personalized_variants(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])

    res = client.post(
        "/ai/messages",
        json={"objective": "Bring back inactive customers", "audience": "lapsed high spenders"},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    messages = res.json()["messages"]
    assert [item["variant"] for item in messages] == ["Emotional", "Urgency", "Value-focused"]
    assert all("{name}" in item["content"] for item in messages)


def test_campaign_insights_summarize_delivery_counts(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])
    _seed_buyers(client)

    segment = client.post(
        "/segments",
        json={"name": "Buyers", "description": "repeat buyers", "rules": {}},
        headers=headers,
    ).json()
    campaign = client.post(
        "/campaigns",
        json={"name": "Hello", "segment_id": segment["id"], "message": "Hi {name}"},
        headers=headers,
    ).json()

    res = client.post(f"/ai/campaigns/{campaign['id']}/insights", headers=headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert "3 customers in repeat buyers" in body["summary"]
    assert body["insights"]
    assert body["recommendations"]

    missing = client.post("/ai/campaigns/missing/insights", headers=headers)
    assert missing.status_code == 404, missing.text


def test_lookalike_profiles_the_source_segment(test_context):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])
    _seed_buyers(client)

    buyers = client.post(
        "/segments",
        json={
            "name": "Buyers",
            "rules": {"conditions": [{"field": "visitCount", "operator": ">=", "value": "1"}], "operator": "AND"},
        },
        headers=headers,
    ).json()

    res = client.post("/ai/lookalike", json={"source_segment_id": buyers["id"]}, headers=headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["source_size"] == 2
    assert body["characteristics"]["avgSpent"] == 4250.0
    assert body["characteristics"]["avgVisits"] == 1.5
    assert body["characteristics"]["spendRange"] == {"min": 1500.0, "max": 7000.0}
    assert body["rules"]["conditions"] == [
        {"field": "totalSpent", "operator": ">=", "value": "1500.00"},
        {"field": "visitCount", "operator": ">=", "value": "1"},
    ]

    missing = client.post("/ai/lookalike", json={"source_segment_id": "missing"}, headers=headers)
    assert missing.status_code == 404, missing.text


def test_openai_provider_without_key_is_a_bad_request(test_context, monkeypatch):
    client, _ = test_context
    headers = _auth_headers(_register(client, email="ai@example.com").json()["access_token"])
    monkeypatch.setattr(settings, "ai_provider", "openai")
    monkeypatch.setattr(settings, "openai_api_key", None)

    res = client.post("/ai/segment-rules", json={"description": "big spenders"}, headers=headers)
    assert res.status_code == 400, res.text
    assert "OPENAI_API_KEY" in res.json()["error"]["message"]


def test_ai_endpoints_require_auth(test_context):
    client, _ = test_context
    res = client.post("/ai/messages", json={"objective": "x", "audience": "y"})
    assert res.status_code == 401, res.text


def test_model_output_is_parsed_from_fenced_json():
    parsed = parse_model_output(
        '```json\n{"conditions": [{"field": "visitCount", "operator": ">", "value": 3}], "operator": "or"}\n```',
        SegmentRulesIn,
    )
    assert parsed.operator == "OR"
    assert parsed.conditions[0].value == "3"


@pytest.mark.parametrize(
    "text",
    [
        "not json at all",
        '{"messages": []}',
        '{"messages": [{"variant": "A"}]}',
    ],
)
def test_unusable_model_output_raises_provider_error(text):
    with pytest.raises(AIProviderError):
        parse_model_output(text, AIMessagesOut)
