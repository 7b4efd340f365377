"""
Manipulation detection: scorers, confidence bands, flag idempotency, reviewer workflow
and fail-open behaviour.
"""

from unittest.mock import MagicMock, patch

import pytest

from discovery.core.errors import DetectorFailure, NotFound, ValidationError
from discovery.core.interfaces import ModerationIntake
from discovery.core.schema import Classification, ContentDescriptor, FlagStatus
from discovery.detection import (
    CompositeScorer, FlagStore, IManipulationScorer, KeywordHeuristicScorer,
    ManipulationDetector, VisualHeuristicScorer
)

CLEAN = "Weekly guitar covers and a chill chat"
LOW = "PLEASE WATCH MY STREAMS TONIGHT FRIENDS"      # excessive caps only
MEDIUM = "click here and buy now"                    # two engagement-bait phrases
HIGH = "send money via western union for a private show"


def descriptor(text, creator_id="c1", ref="c1-profile", thumbnail=None):
    return ContentDescriptor(creator_id=creator_id, descriptor_ref=ref, caption=text,
                             thumbnail=thumbnail or {})


@pytest.fixture
def detector(db_path, content, intake, config, creator_factory):
    creator_factory("c1", caption=CLEAN)
    return ManipulationDetector(content, intake, config, flags=FlagStore(db_path))


def set_caption(content, text, creator_id="c1"):
    content.set_descriptor(descriptor(text, creator_id=creator_id, ref=f"{creator_id}-profile"))


class TestKeywordScorer:

    def test_clean_text(self):
        result = KeywordHeuristicScorer().classify(descriptor(CLEAN))
        assert result.confidence == 0.0
        assert result.matched_categories == frozenset()

    def test_banned_term(self):
        result = KeywordHeuristicScorer().classify(descriptor("escort services available"))
        assert result.confidence >= 0.75
        assert "banned_terms" in result.matched_categories

    def test_banned_term_needs_word_boundary(self):
        result = KeywordHeuristicScorer().classify(descriptor("methodical painting lessons"))
        assert "banned_terms" not in result.matched_categories

    def test_payment_lure(self):
        result = KeywordHeuristicScorer().classify(descriptor(HIGH))
        assert result.confidence >= 0.75
        assert "payment_lure" in result.matched_categories

    def test_excessive_caps(self):
        result = KeywordHeuristicScorer().classify(descriptor(LOW))
        assert result.matched_categories == frozenset({"excessive_caps"})
        assert result.confidence == pytest.approx(0.3)

    def test_engagement_bait(self):
        result = KeywordHeuristicScorer().classify(descriptor(MEDIUM))
        assert result.confidence == pytest.approx(0.6)

    def test_repeated_characters_and_links(self):
        result = KeywordHeuristicScorer().classify(descriptor("wowwwwwwwwwwwww see www.example.com"))
        assert {"repeated_chars", "external_link"} <= result.matched_categories


class TestVisualScorer:

    def test_clean_thumbnail(self):
        assert VisualHeuristicScorer().classify(descriptor("", thumbnail={})).confidence == 0.0

    def test_label_mismatch(self):
        thumb = {"declared_labels": ["guitar"], "detected_labels": ["car"]}
        result = VisualHeuristicScorer().classify(descriptor("", thumbnail=thumb))
        assert result.confidence == pytest.approx(0.5)
        assert "label_mismatch" in result.matched_categories

    def test_overlay_and_duplicates(self):
        thumb = {"overlay_text_ratio": 0.8, "duplicate_count": 5}
        result = VisualHeuristicScorer().classify(descriptor("", thumbnail=thumb))
        assert {"text_overlay", "duplicate_thumbnail"} == set(result.matched_categories)
        assert result.confidence > 0.7


class TestCompositeScorer:

    def test_max_and_noisy_or(self):
        d = descriptor(LOW, thumbnail={"declared_labels": ["guitar"], "detected_labels": ["car"]})
        children = [KeywordHeuristicScorer(), VisualHeuristicScorer()]

        assert CompositeScorer(children, mode="max").classify(d).confidence == pytest.approx(0.5)
        assert CompositeScorer(children, mode="noisy_or").classify(d).confidence == pytest.approx(0.65)

    def test_failing_child_marks_degraded(self):
        broken = MagicMock(spec=IManipulationScorer)
        broken.name = "broken"
        broken.classify.side_effect = RuntimeError("model offline")

        result = CompositeScorer([KeywordHeuristicScorer(), broken]).classify(descriptor(HIGH))

        assert result.degraded is True
        assert result.confidence >= 0.75

    def test_all_children_failing_raises(self):
        broken = MagicMock(spec=IManipulationScorer)
        broken.name = "broken"
        broken.classify.side_effect = RuntimeError("model offline")

        with pytest.raises(DetectorFailure):
            CompositeScorer([broken]).classify(descriptor(CLEAN))

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            CompositeScorer([KeywordHeuristicScorer()], mode="mean")


class TestConfidenceBands:

    def test_clean_content_creates_no_flag(self, detector):
        assert detector.evaluate("c1").confidence == 0.0
        assert detector.list_flags() == []

    def test_low_band_flag_new(self, detector, content, intake):
        set_caption(content, LOW)
        result = detector.evaluate("c1")

        flags = detector.list_flags()
        assert result.confidence == pytest.approx(0.3)
        assert len(flags) == 1
        assert flags[0].status == FlagStatus.NEW
        assert intake.cases == []

    def test_medium_band_flag_new(self, detector, content):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        assert detector.list_flags()[0].status == FlagStatus.NEW

    def test_high_band_confirmed_with_case(self, detector, content, intake):
        set_caption(content, HIGH)
        detector.evaluate("c1")

        flag = detector.list_flags()[0]
        assert flag.status == FlagStatus.CONFIRMED
        assert len(intake.cases) == 1
        assert flag.case_id == intake.cases[0]["case_id"]

    def test_very_high_confidence_excludes_creator(self, detector, content):
        set_caption(content, "escort and cocaine, send money by wire transfer")
        result = detector.evaluate("c1")

        assert result.confidence >= 0.9
        assert detector.is_excluded("c1")

    def test_missing_descriptor_scores_zero(self, detector):
        assert detector.evaluate("unknown").confidence == 0.0


class TestFlagIdempotency:

    def test_same_content_creates_one_flag(self, detector, content, intake):
        set_caption(content, HIGH)
        detector.evaluate("c1")
        detector.evaluate("c1")

        assert len(detector.list_flags()) == 1
        assert len(intake.cases) == 1

    def test_changed_content_supersedes_new_flag(self, detector, content):
        set_caption(content, LOW)
        detector.evaluate("c1")
        original = detector.list_flags()[0]

        set_caption(content, MEDIUM)
        detector.evaluate("c1")

        flags = detector.list_flags()
        assert len(flags) == 1
        assert flags[0].flag_id == original.flag_id
        assert flags[0].fingerprint != original.fingerprint
        assert flags[0].confidence == pytest.approx(0.6)

    def test_confirmed_flag_is_not_mutated(self, detector, content):
        set_caption(content, HIGH)
        detector.evaluate("c1")
        confirmed = detector.list_flags()[0]

        set_caption(content, "wire transfer only, send money first")
        detector.evaluate("c1")

        flags = {f.flag_id: f for f in detector.list_flags()}
        assert len(flags) == 2
        assert flags[confirmed.flag_id].fingerprint == confirmed.fingerprint
        assert flags[confirmed.flag_id].status == FlagStatus.CONFIRMED

    def test_clean_content_closes_open_flag(self, detector, content):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")

        set_caption(content, CLEAN)
        assert detector.evaluate("c1").confidence == 0.0
        assert detector.list_flags()[0].status == FlagStatus.DISMISSED

    def test_clean_content_leaves_flag_under_review(self, detector, content):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id
        detector.start_review(flag_id, "alice")

        set_caption(content, CLEAN)
        assert detector.evaluate("c1").confidence == 0.0

        flag = detector.get_flag(flag_id)
        assert flag.status == FlagStatus.UNDER_REVIEW
        assert flag.reviewer == "alice"
        assert flag.review_reason is None
        assert flag.confidence == 0.0

        assert detector.dismiss(flag_id, "alice", "content fixed").status == FlagStatus.DISMISSED

    def test_high_confidence_leaves_flag_under_review(self, detector, content, intake):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id
        detector.start_review(flag_id, "alice")

        set_caption(content, HIGH)
        detector.evaluate("c1")

        flag = detector.get_flag(flag_id)
        assert flag.status == FlagStatus.UNDER_REVIEW
        assert flag.confidence >= 0.75
        assert intake.cases == []

    def test_staged_change_yields_to_reviewer(self, detector, content):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id

        set_caption(content, CLEAN)
        staged = []
        detector.evaluate("c1", staged)
        detector.start_review(flag_id, "alice")
        detector.apply_changes(staged)

        flag = detector.get_flag(flag_id)
        assert flag.status == FlagStatus.UNDER_REVIEW
        assert flag.confidence == 0.0


class TestReviewerWorkflow:

    def test_review_then_confirm(self, detector, content, intake):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id

        assert detector.start_review(flag_id, "mod-1").status == FlagStatus.UNDER_REVIEW
        confirmed = detector.confirm(flag_id, "mod-1", "bait spam")

        assert confirmed.status == FlagStatus.CONFIRMED
        assert confirmed.confidence >= 0.75
        assert confirmed.reviewer == "mod-1"
        assert len(intake.cases) == 1

    def test_dismissed_flag_contributes_zero(self, detector, content):
        set_caption(content, MEDIUM)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id

        detector.dismiss(flag_id, "mod-1", "false positive")

        assert detector.evaluate("c1").confidence == 0.0
        assert len(detector.list_flags()) == 1

    def test_invalid_transition_rejected(self, detector, content):
        set_caption(content, HIGH)
        detector.evaluate("c1")
        flag_id = detector.list_flags()[0].flag_id

        with pytest.raises(ValidationError):
            detector.dismiss(flag_id, "mod-1")
        with pytest.raises(ValidationError):
            detector.start_review(flag_id, "mod-1")

    def test_unknown_flag(self, detector):
        with pytest.raises(NotFound):
            detector.start_review("missing", "mod-1")


class TestFailOpen:

    def test_content_source_failure_fails_open(self, detector, content):
        with patch.object(content, "get_content_descriptor", side_effect=ConnectionError("store down")):
            result = detector.evaluate("c1")

        assert result.confidence == 0.0
        assert result.degraded is True
        assert detector.pending_retries() == ["c1"]

    def test_scorer_failure_fails_open_and_recovers(self, detector, content):
        set_caption(content, MEDIUM)
        with patch.object(detector.scorer, "classify", side_effect=DetectorFailure("down")):
            assert detector.evaluate("c1").confidence == 0.0

        assert detector.pending_retries() == ["c1"]
        assert detector.evaluate("c1").confidence == pytest.approx(0.6)
        assert detector.pending_retries() == []

    def test_fail_open_is_logged(self, detector, content):
        with patch("discovery.detection.detector.logger") as mock_logger:
            with patch.object(content, "get_content_descriptor", side_effect=ConnectionError("down")):
                detector.evaluate("c1")

        mock_logger.log_detector_fail_open.assert_called_once()

    def test_case_intake_failure_retried(self, db_path, content, config, creator_factory):
        creator_factory("c1", caption=HIGH)
        intake = MagicMock(spec=ModerationIntake)
        intake.open_moderation_case.side_effect = RuntimeError("intake down")
        detector = ManipulationDetector(content, intake, config, flags=FlagStore(db_path))

        detector.evaluate("c1")
        flag = detector.list_flags()[0]
        assert flag.status == FlagStatus.CONFIRMED
        assert flag.case_id is None

        intake.open_moderation_case.side_effect = None
        intake.open_moderation_case.return_value = "case-1"

        assert detector.retry_pending_cases() == 1
        assert detector.get_flag(flag.flag_id).case_id == "case-1"

    def test_degraded_classification_keeps_creator_queued(self, detector, content):
        set_caption(content, MEDIUM)
        degraded = Classification(confidence=0.6, matched_categories={"engagement_bait"}, degraded=True)
        with patch.object(detector.scorer, "classify", return_value=degraded):
            detector.evaluate("c1")

        assert detector.pending_retries() == ["c1"]
