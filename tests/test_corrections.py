"""
Corrective parameter store: newest entry wins, expired entries fall back to neutral.
"""

from datetime import timedelta

from discovery.core.corrections import CorrectiveParameterStore
from discovery.core.schema import CorrectiveParameters, NEUTRAL_CORRECTIONS, utcnow


class TestCorrectiveParameters:

    def test_neutral_before_any_audit(self, db_path):
        store = CorrectiveParameterStore(db_path)
        assert store.current() == NEUTRAL_CORRECTIONS
        assert store.current().density_threshold_factor == 1.0
        assert store.current().guaranteed_slot_boost == 0

    def test_newest_entry_applies(self, db_path):
        store = CorrectiveParameterStore(db_path)
        expires = utcnow() + timedelta(hours=1)
        store.write(CorrectiveParameters(guaranteed_slot_boost=2, expires_at=expires))
        store.write(CorrectiveParameters(density_threshold_factor=0.8, expires_at=expires))

        assert store.current().density_threshold_factor == 0.8
        assert store.current().guaranteed_slot_boost == 0

    def test_persisted_across_instances(self, db_path):
        expires = utcnow() + timedelta(hours=1)
        CorrectiveParameterStore(db_path).write(
            CorrectiveParameters(guaranteed_slot_boost=2, reason="new_creator_share", expires_at=expires)
        )

        reloaded = CorrectiveParameterStore(db_path).current()
        assert reloaded.guaranteed_slot_boost == 2
        assert reloaded.reason == "new_creator_share"

    def test_expired_entry_is_neutral(self, db_path):
        store = CorrectiveParameterStore(db_path)
        now = utcnow()
        store.write(CorrectiveParameters(guaranteed_slot_boost=2, expires_at=now + timedelta(hours=1)))

        assert store.current(now + timedelta(hours=2)) == NEUTRAL_CORRECTIONS
        assert store.latest().guaranteed_slot_boost == 2
