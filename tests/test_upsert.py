"""
Tests for natural-key upserts and per-row failure isolation.
"""
from outreach_sync.models.domain import Campaign, Contact
from outreach_sync.services import metrics
from outreach_sync.services.contacts import get_or_create_contact
from outreach_sync.services.upsert import RecordResult, insert_if_missing, upsert_batch, upsert_row

CAMPAIGN_KEY = ("workspace_id", "platform", "external_id")


def _campaign(external_id="11", name="Q3 outbound", workspace_id=1):
    return {"workspace_id": workspace_id, "platform": "smartlead", "external_id": external_id, "name": name}


class TestUpsertRow:

    def test_same_key_updates_in_place(self, db):
        upsert_row(db, Campaign, _campaign(name="first"), CAMPAIGN_KEY)
        upsert_row(db, Campaign, _campaign(name="second"), CAMPAIGN_KEY)
        db.commit()

        rows = db.query(Campaign).all()
        assert len(rows) == 1
        assert rows[0].name == "second"

    def test_columns_not_supplied_are_kept(self, db):
        upsert_row(db, Campaign, _campaign(), CAMPAIGN_KEY)
        db.commit()
        campaign_id = db.query(Campaign.id).scalar()
        metrics.increment_campaign_metric(db, campaign_id, "total_sent", 5)
        db.commit()

        upsert_row(db, Campaign, _campaign(name="renamed"), CAMPAIGN_KEY)
        db.commit()

        campaign = db.get(Campaign, campaign_id)
        assert campaign.name == "renamed"
        assert campaign.total_sent == 5

    def test_workspaces_are_isolated(self, db):
        upsert_row(db, Campaign, _campaign(workspace_id=1), CAMPAIGN_KEY)
        upsert_row(db, Campaign, _campaign(workspace_id=2), CAMPAIGN_KEY)
        db.commit()
        assert db.query(Campaign).count() == 2

    def test_insert_if_missing_reports_insert(self, db):
        assert insert_if_missing(db, Campaign, _campaign(), CAMPAIGN_KEY) is True
        assert insert_if_missing(db, Campaign, _campaign(name="other"), CAMPAIGN_KEY) is False
        db.commit()
        assert db.query(Campaign).one().name == "Q3 outbound"


class TestUpsertBatch:

    def test_bad_rows_fail_alone(self, db):
        results = [
            RecordResult.success(_campaign("1"), ref="1"),
            RecordResult.failure("unmappable record: KeyError: 'id'", ref=None),
            RecordResult.success({"workspace_id": 1, "platform": "smartlead", "external_id": None, "name": "x"}, ref="x"),
            RecordResult.success(_campaign("2"), ref="2"),
        ]
        outcome = upsert_batch(db, Campaign, results, CAMPAIGN_KEY)
        db.commit()

        assert outcome.upserted == 2
        assert outcome.failed == 2
        assert len(outcome.errors) == 2
        assert sorted(c.external_id for c in db.query(Campaign).all()) == ["1", "2"]

    def test_prepare_failure_rolls_back_its_lookups(self, db):
        def prepare(row):
            get_or_create_contact(db, 1, "ghost@example.com", source="sync")
            raise ValueError("no campaign for row")

        outcome = upsert_batch(db, Campaign, [RecordResult.success(_campaign())], CAMPAIGN_KEY, prepare=prepare)
        db.commit()

        assert outcome.failed == 1
        assert db.query(Contact).count() == 0
        assert db.query(Campaign).count() == 0

    def test_replaying_a_page_is_idempotent(self, db):
        page = [RecordResult.success(_campaign(str(i))) for i in range(5)]
        upsert_batch(db, Campaign, page, CAMPAIGN_KEY)
        upsert_batch(db, Campaign, page, CAMPAIGN_KEY)
        db.commit()
        assert db.query(Campaign).count() == 5
