"""Integration tests for the /api/payments endpoints (real DB session)."""

from sqlalchemy import select

from referral_desk.domain.models import Deal


# ---------------------------------------------------------------------------
# List
# ---------------------------------------------------------------------------


class TestListDeals:
    async def test_newest_first_and_canonical(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        await make_deal(referral.id, status="expected", age_days=5)
        await make_deal(referral.id, status="invoiced", age_days=1)

        resp = await api_client.get("/api/payments", params={"referral_id": referral.id})

        assert resp.status_code == 200
        assert [d["status"] for d in resp.json()] == ["payment_sent", "under_contract"]

    async def test_filters_by_referral(self, api_client, make_referral, make_deal):
        first = await make_referral()
        second = await make_referral(borrower_name="Other")
        await make_deal(first.id)
        await make_deal(second.id)

        resp = await api_client.get("/api/payments", params={"referral_id": first.id})
        assert len(resp.json()) == 1
        assert resp.json()[0]["referral_id"] == first.id

        resp = await api_client.get("/api/payments")
        assert len(resp.json()) == 2


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreateDeal:
    async def test_create_derives_expected_from_terms(self, api_client, make_referral):
        referral = await make_referral()

        resp = await api_client.post("/api/payments", json={
            "referral_id": referral.id,
            "status": "under_contract",
            "contract_price_cents": 30_000_000,
            "commission_basis_points": 300,
            "referral_fee_basis_points": 2500,
            "side": "buy",
        })

        assert resp.status_code == 201
        data = resp.json()
        assert data["expected_amount_cents"] == 225_000
        assert data["agent_attribution"] == ""
        assert data["terminated_reason"] is None
        assert data["id"]

    async def test_create_terminated_zeroes_amounts(self, api_client, make_referral):
        referral = await make_referral()

        resp = await api_client.post("/api/payments", json={
            "referral_id": referral.id,
            "status": "terminated",
            "expected_amount_cents": 1000,
        })

        data = resp.json()
        assert data["expected_amount_cents"] == 0
        assert data["terminated_reason"] == "inspection"

    async def test_unknown_referral(self, api_client):
        resp = await api_client.post("/api/payments", json={"referral_id": "missing"})
        assert resp.status_code == 404

    async def test_invalid_status_rejected(self, api_client, make_referral):
        referral = await make_referral()
        resp = await api_client.post(
            "/api/payments", json={"referral_id": referral.id, "status": "expected"}
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Update
# ---------------------------------------------------------------------------


class TestUpdateDeal:
    async def test_partial_update(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id, expected_amount_cents=225_000, used_afc=True)

        resp = await api_client.patch("/api/payments", json={"id": deal.id, "status": "closed"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "closed"
        assert data["expected_amount_cents"] == 225_000
        assert data["used_afc"] is True

    async def test_terminate_applies_invariants(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id, expected_amount_cents=225_000, received_amount_cents=500)

        resp = await api_client.patch(
            "/api/payments", json={"id": deal.id, "status": "terminated"}
        )

        data = resp.json()
        assert data["expected_amount_cents"] == 0
        assert data["received_amount_cents"] == 0
        assert data["terminated_reason"] == "inspection"

    async def test_leaving_terminated_clears_reason(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id, status="terminated", terminated_reason="financing")

        resp = await api_client.patch(
            "/api/payments",
            json={"id": deal.id, "status": "under_contract", "terminated_reason": None},
        )

        data = resp.json()
        assert data["status"] == "under_contract"
        assert data["terminated_reason"] is None

    async def test_null_attribution_clears(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id, agent_attribution="AHA")

        resp = await api_client.patch(
            "/api/payments", json={"id": deal.id, "agent_attribution": None}
        )
        assert resp.json()["agent_attribution"] == ""

    async def test_paid_stamps_paid_date(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id, status="payment_sent", expected_amount_cents=225_000)

        resp = await api_client.patch("/api/payments", json={"id": deal.id, "status": "paid"})
        assert resp.json()["paid_date"] is not None

    async def test_term_change_recomputes_expected(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(
            referral.id,
            expected_amount_cents=225_000,
            contract_price_cents=30_000_000,
            commission_basis_points=300,
            referral_fee_basis_points=2500,
        )

        resp = await api_client.patch(
            "/api/payments", json={"id": deal.id, "contract_price_cents": 40_000_000}
        )
        assert resp.json()["expected_amount_cents"] == 300_000

    async def test_legacy_status_rewritten(self, api_client, make_referral, make_deal, db_session):
        referral = await make_referral()
        deal = await make_deal(referral.id, status="invoiced")

        resp = await api_client.patch("/api/payments", json={"id": deal.id, "used_afc": True})

        assert resp.json()["status"] == "payment_sent"
        row = (await db_session.execute(select(Deal).where(Deal.id == deal.id))).scalar_one()
        assert row.status == "payment_sent"

    async def test_unknown_deal(self, api_client):
        resp = await api_client.patch("/api/payments", json={"id": "missing", "status": "closed"})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Deal missing not found"

    async def test_negative_amount_rejected(self, api_client, make_referral, make_deal):
        referral = await make_referral()
        deal = await make_deal(referral.id)
        resp = await api_client.patch(
            "/api/payments", json={"id": deal.id, "received_amount_cents": -1}
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteDeal:
    async def test_delete(self, api_client, make_referral, make_deal, db_session):
        referral = await make_referral()
        deal = await make_deal(referral.id)

        resp = await api_client.request("DELETE", "/api/payments", json={"id": deal.id})

        assert resp.status_code == 204
        result = await db_session.execute(select(Deal).where(Deal.id == deal.id))
        assert result.scalar_one_or_none() is None

    async def test_delete_unknown(self, api_client):
        resp = await api_client.request("DELETE", "/api/payments", json={"id": "missing"})
        assert resp.status_code == 404
