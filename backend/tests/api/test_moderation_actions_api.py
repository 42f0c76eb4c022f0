import pytest

from delguur.infra.jwt import encode_access
from delguur.moderation.domain import container
from delguur.moderation.domain.models import Listing, ListingStatus, Location

ADMIN = {"X-User-Id": "admin-1", "X-User-Roles": "admin"}
OWNER = {"X-User-Id": "owner-1"}
STRANGER = {"X-User-Id": "stranger"}
SELENGE = Location(aimag="Selenge", soum="Sukhbaatar")


@pytest.fixture(autouse=True)
def seeded_listing():
	container.get_store().seed_listings(
		[Listing(id="l-1", title="Sea buckthorn juice", owner_id="owner-1", location=SELENGE)]
	)


async def _moderate(api_client, violation="foreign_product", headers=ADMIN, **extra):
	body = {"listing_id": "l-1", "violation_type": violation, "moderator_note": "checked", **extra}
	return await api_client.post("/api/mod/v1/actions", json=body, headers=headers)


@pytest.mark.asyncio
async def test_admin_moderation_deletes_listing(api_client):
	response = await _moderate(api_client)

	assert response.status_code == 201
	record = response.json()
	assert record["action_taken"] == "delete"
	assert record["listing_title_snapshot"] == "Sea buckthorn juice"
	assert record["appeal_status"] == "none"
	assert record["moderator_id"] == "admin-1"
	assert container.get_store().listings["l-1"].status is ListingStatus.DELETED


@pytest.mark.asyncio
async def test_missing_listing_is_404(api_client):
	response = await api_client.post(
		"/api/mod/v1/actions",
		json={"listing_id": "ghost", "violation_type": "spam", "moderator_note": ""},
		headers=ADMIN,
	)

	assert response.status_code == 404
	assert response.json()["detail"] == "listing_not_found"


@pytest.mark.asyncio
async def test_idempotency_key_header_replays_record(api_client):
	headers = {**ADMIN, "Idempotency-Key": "mod-req-7"}

	first = await _moderate(api_client, "duplicate", headers=headers)
	replay = await _moderate(api_client, "duplicate", headers=headers)

	assert first.json()["id"] == replay.json()["id"]
	assert container.get_store().listings["l-1"].warnings == [first.json()["id"]]


@pytest.mark.asyncio
async def test_regular_users_cannot_moderate(api_client):
	response = await _moderate(api_client, headers=STRANGER)

	assert response.status_code == 403
	assert response.json()["detail"] == "insufficient_role"


@pytest.mark.asyncio
async def test_soum_moderator_can_warn_but_not_delete(api_client):
	await container.get_moderator_directory().appoint("mod-1", "soum", "admin-1", SELENGE)
	moderator = {"X-User-Id": "mod-1"}

	delete = await _moderate(api_client, "spam", headers=moderator)
	warn = await _moderate(api_client, "duplicate", headers=moderator)

	assert delete.status_code == 403
	assert warn.status_code == 201
	assert warn.json()["action_taken"] == "warn"


@pytest.mark.asyncio
async def test_record_visibility(api_client):
	record_id = (await _moderate(api_client)).json()["id"]

	owner = await api_client.get(f"/api/mod/v1/actions/{record_id}", headers=OWNER)
	stranger = await api_client.get(f"/api/mod/v1/actions/{record_id}", headers=STRANGER)
	missing = await api_client.get("/api/mod/v1/actions/nope", headers=OWNER)
	listed = await api_client.get("/api/mod/v1/actions", params={"listing_id": "l-1"}, headers=ADMIN)

	assert owner.status_code == 200
	assert stranger.status_code == 403
	assert stranger.json()["detail"] == "not_record_owner"
	assert missing.status_code == 404
	assert [row["id"] for row in listed.json()] == [record_id]


@pytest.mark.asyncio
async def test_appeal_round_trip_restores_listing(api_client):
	record_id = (await _moderate(api_client)).json()["id"]

	stranger = await api_client.post(
		"/api/mod/v1/appeals", json={"record_id": record_id, "reason": "mine"}, headers=STRANGER
	)
	submitted = await api_client.post(
		"/api/mod/v1/appeals",
		json={"record_id": record_id, "reason": "Grown in Selenge", "evidence": ["https://photos.mn/1"]},
		headers=OWNER,
	)
	duplicate = await api_client.post(
		"/api/mod/v1/appeals", json={"record_id": record_id, "reason": "again"}, headers=OWNER
	)

	assert stranger.status_code == 403
	assert submitted.status_code == 201
	assert submitted.json()["status"] == "pending"
	assert duplicate.status_code == 409
	assert duplicate.json()["detail"] == "appeal_not_allowed"

	appeal_id = submitted.json()["id"]
	queue = await api_client.get("/api/mod/v1/appeals", params={"status": "pending"}, headers=ADMIN)
	assert [row["id"] for row in queue.json()] == [appeal_id]

	resolved = await api_client.post(
		f"/api/mod/v1/appeals/{appeal_id}/resolve",
		json={"approved": True, "reviewer_note": "farm verified"},
		headers=ADMIN,
	)
	repeat = await api_client.post(
		f"/api/mod/v1/appeals/{appeal_id}/resolve",
		json={"approved": False, "reviewer_note": "oops"},
		headers=ADMIN,
	)

	assert resolved.status_code == 200
	assert resolved.json()["status"] == "approved"
	assert container.get_store().listings["l-1"].status is ListingStatus.ACTIVE
	assert repeat.status_code == 409
	assert repeat.json()["detail"] == "appeal_already_resolved"

	record = await api_client.get(f"/api/mod/v1/actions/{record_id}", headers=OWNER)
	assert record.json()["appeal_status"] == "approved"
	assert record.json()["appeal_note"] == "farm verified"


@pytest.mark.asyncio
async def test_counterfeit_record_cannot_be_appealed(api_client):
	record_id = (await _moderate(api_client, "counterfeit")).json()["id"]

	response = await api_client.post(
		"/api/mod/v1/appeals", json={"record_id": record_id, "reason": "it is genuine"}, headers=OWNER
	)

	assert response.status_code == 409


@pytest.mark.asyncio
async def test_unknown_appeal_and_record(api_client):
	missing_record = await api_client.post(
		"/api/mod/v1/appeals", json={"record_id": "nope", "reason": "x"}, headers=OWNER
	)
	missing_appeal = await api_client.post(
		"/api/mod/v1/appeals/nope/resolve", json={"approved": True}, headers=ADMIN
	)

	assert missing_record.status_code == 404
	assert missing_appeal.status_code == 404


@pytest.mark.asyncio
async def test_refund_quote_and_rules(api_client):
	quote = await api_client.post(
		"/api/mod/v1/refunds/quote",
		json={"subscription_price": 30000, "days_used": 10, "total_days": 30, "refund_policy": "partial"},
	)
	bad = await api_client.post(
		"/api/mod/v1/refunds/quote",
		json={
			"subscription_price": 100,
			"days_used": 0,
			"total_days": 30,
			"refund_policy": "credit",
			"refund_percent": 120,
		},
	)
	rules = await api_client.get("/api/mod/v1/rules")

	assert quote.json() == {"refund_policy": "partial", "amount": 20000}
	assert bad.status_code == 400
	assert len(rules.json()) == 9
	counterfeit = next(rule for rule in rules.json() if rule["type"] == "counterfeit")
	assert counterfeit["appeal_allowed"] is False


@pytest.mark.asyncio
async def test_screening_flags_imported_goods(api_client):
	response = await api_client.post(
		"/api/mod/v1/screening",
		json={"title": "Xiaomi phone", "description": "from taobao"},
		headers=ADMIN,
	)

	assert response.status_code == 200
	payload = response.json()
	assert payload["foreign_product_suspected"] is True
	assert set(payload["matched_keywords"]) == {"taobao", "xiaomi"}
	assert payload["suggested_violation"] == "foreign_product"


@pytest.mark.asyncio
async def test_bearer_token_authenticates(api_client):
	token = encode_access({"sub": "admin-9", "roles": ["admin"]})

	response = await _moderate(api_client, "duplicate", headers={"Authorization": f"Bearer {token}"})
	forged = await _moderate(api_client, "duplicate", headers={"Authorization": "Bearer not-a-token"})

	assert response.status_code == 201
	assert response.json()["moderator_id"] == "admin-9"
	assert forged.status_code == 401


@pytest.mark.asyncio
async def test_moderator_appointment_endpoints(api_client):
	appointed = await api_client.post(
		"/api/mod/v1/moderators",
		json={"user_id": "mod-5", "level": "aimag", "aimag": "Selenge"},
		headers=ADMIN,
	)
	not_admin = await api_client.post(
		"/api/mod/v1/moderators", json={"user_id": "mod-6", "level": "national"}, headers=OWNER
	)
	missing_location = await api_client.post(
		"/api/mod/v1/moderators", json={"user_id": "mod-7", "level": "soum"}, headers=ADMIN
	)

	assert appointed.status_code == 201
	assert "remove_listings" in appointed.json()["permissions"]
	assert "ban_users" not in appointed.json()["permissions"]
	assert not_admin.status_code == 403
	assert missing_location.status_code == 400
	assert missing_location.json()["code"] == "location_required"

	queue = await api_client.get("/api/mod/v1/reports", headers={"X-User-Id": "mod-5"})
	assert queue.status_code == 200

	removed = await api_client.delete("/api/mod/v1/moderators/mod-5", headers=ADMIN)
	assert removed.status_code == 204
	assert (await api_client.get("/api/mod/v1/moderators/mod-5", headers=ADMIN)).json()["is_active"] is False
	assert (await api_client.get("/api/mod/v1/reports", headers={"X-User-Id": "mod-5"})).status_code == 403
