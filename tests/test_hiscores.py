import datetime
import threading

import pytest

from osutrack.errors import ConcurrencyConflict, ValidationError
from osutrack.hiscores import HighScoreTracker, grade_value
from osutrack.models.db import Hiscore, User, utcnow
from osutrack.models.results import ScoreIngestStatus
from osutrack.models.snapshot import GameMode, RawScore
from osutrack.services.storage import StorageService

from helpers import USER_ID, USERNAME, raw_score

BEATMAP_ID = 129891

@pytest.fixture
def tracker(hiscores):
    hiscores.ingest_score(USER_ID, BEATMAP_ID, GameMode.STANDARD,
                          raw_score(score='900000', score_time='2024-01-01 10:00:00'),
                          username=USERNAME)
    return hiscores

class TestIngestScore:

    def test_first_score_is_new_and_current_best(self, hiscores):
        result = hiscores.ingest_score(USER_ID, BEATMAP_ID, 0, raw_score(), username=USERNAME)
        assert result.status == ScoreIngestStatus.NEW
        assert result.is_current_best
        assert result.previous_best_score is None
        assert hiscores.current_best(USER_ID, BEATMAP_ID, 0).score == 900000

    def test_higher_score_improves(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='950000', score_time='2024-01-02 10:00:00'))
        assert result.status == ScoreIngestStatus.IMPROVED
        assert result.is_current_best
        assert result.previous_best_score == 900000
        assert tracker.current_best(USER_ID, BEATMAP_ID, 0).score == 950000
        assert [s.score for s in tracker.score_history(USER_ID, BEATMAP_ID, 0)] == [900000, 950000]

    def test_lower_score_is_kept_as_history_only(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='800000', score_time='2024-01-02 10:00:00'))
        assert result.status == ScoreIngestStatus.UNCHANGED
        assert not result.is_current_best
        assert tracker.current_best(USER_ID, BEATMAP_ID, 0).score == 900000
        history = tracker.score_history(USER_ID, BEATMAP_ID, 0)
        assert [s.score for s in history] == [900000, 800000]
        assert [s.is_best for s in history] == [True, False]

    def test_equal_score_later_does_not_take_best(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='900000', score_time='2024-01-05 10:00:00'))
        assert result.status == ScoreIngestStatus.UNCHANGED
        best = tracker.current_best(USER_ID, BEATMAP_ID, 0)
        assert best.score_time == datetime.datetime(2024, 1, 1, 10, 0, 0)

    def test_equal_score_delivered_late_but_achieved_earlier_takes_best(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='900000', score_time='2023-12-30 10:00:00'))
        assert result.status == ScoreIngestStatus.UNCHANGED
        assert result.is_current_best
        best = tracker.current_best(USER_ID, BEATMAP_ID, 0)
        assert best.score_time == datetime.datetime(2023, 12, 30, 10, 0, 0)
        assert sum(s.is_best for s in tracker.score_history(USER_ID, BEATMAP_ID, 0)) == 1

    def test_redelivered_play_is_not_appended_twice(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0, raw_score(score='900000'))
        assert result.status == ScoreIngestStatus.RECORDED
        assert result.is_current_best
        assert len(tracker.score_history(USER_ID, BEATMAP_ID, 0)) == 1

    def test_rank_is_stored_verbatim_and_rank_up_detected(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='950000', rank='SH', score_time='2024-01-02 10:00:00'))
        assert result.rank_up
        assert result.previous_best_rank == 'A'
        assert tracker.current_best(USER_ID, BEATMAP_ID, 0).rank == 'SH'

    def test_improvement_without_better_grade_is_not_a_rank_up(self, tracker):
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='910000', rank='A', score_time='2024-01-02 10:00:00'))
        assert result.status == ScoreIngestStatus.IMPROVED
        assert not result.rank_up

    def test_beatmaps_and_modes_are_separate_keys(self, tracker):
        other_map = tracker.ingest_score(USER_ID, BEATMAP_ID + 1, 0, raw_score(beatmap_id=str(BEATMAP_ID + 1)))
        other_mode = tracker.ingest_score(USER_ID, BEATMAP_ID, GameMode.TAIKO, raw_score())
        assert other_map.status == ScoreIngestStatus.NEW
        assert other_mode.status == ScoreIngestStatus.NEW

    def test_ingest_scores_listing(self, hiscores):
        results = hiscores.ingest_scores(USER_ID, 0, [
            raw_score(beatmap_id='1', score='500000'),
            raw_score(beatmap_id='2', score='600000'),
            raw_score(beatmap_id='1', score='550000', score_time='2024-01-03 10:00:00'),
        ], username=USERNAME)
        assert [r.status for r in results] == [
            ScoreIngestStatus.NEW, ScoreIngestStatus.NEW, ScoreIngestStatus.IMPROVED
        ]

class TestScoreValidation:

    def test_unknown_user_without_username(self, hiscores):
        with pytest.raises(ValidationError):
            hiscores.ingest_score(USER_ID, BEATMAP_ID, 0, raw_score())

    def test_bad_grade_code(self, hiscores):
        with pytest.raises(ValidationError):
            hiscores.ingest_score(USER_ID, BEATMAP_ID, 0, raw_score(rank='ABC'), username=USERNAME)

    def test_missing_score(self, hiscores):
        payload = raw_score()
        del payload['score']
        with pytest.raises(ValidationError):
            hiscores.ingest_score(USER_ID, BEATMAP_ID, 0, payload, username=USERNAME)

    def test_beatmap_mismatch(self, hiscores):
        with pytest.raises(ValidationError):
            hiscores.ingest_score(USER_ID, BEATMAP_ID + 5, 0, raw_score(), username=USERNAME)

    def test_listing_entry_without_beatmap(self, hiscores):
        payload = raw_score()
        del payload['beatmap_id']
        with pytest.raises(ValidationError):
            hiscores.ingest_scores(USER_ID, 0, [payload], username=USERNAME)

class TestNewScoreCounts:

    def test_counts_new_and_improved_in_window(self, hiscores):
        start = utcnow() - datetime.timedelta(seconds=1)
        hiscores.ingest_score(USER_ID, 1, 0, raw_score(beatmap_id='1', score='500000'), username=USERNAME)
        hiscores.ingest_score(USER_ID, 1, 0, raw_score(beatmap_id='1', score='600000',
                                                       score_time='2024-01-02 10:00:00'))
        hiscores.ingest_score(USER_ID, 1, 0, raw_score(beatmap_id='1', score='400000',
                                                       score_time='2024-01-03 10:00:00'))
        hiscores.ingest_score(USER_ID, 2, 0, raw_score(beatmap_id='2'))
        end = utcnow() + datetime.timedelta(seconds=1)

        assert hiscores.count_new_scores(USER_ID, 0, start, end) == 3
        assert [s.beatmap_id for s in hiscores.new_scores(USER_ID, 0, start, end)] == [1, 1, 2]
        assert hiscores.count_new_scores(USER_ID, GameMode.MANIA, start, end) == 0

    def test_window_before_any_score_is_empty(self, hiscores):
        hiscores.ingest_score(USER_ID, 1, 0, raw_score(beatmap_id='1'), username=USERNAME)
        day_ago = utcnow() - datetime.timedelta(days=1)
        assert hiscores.count_new_scores(USER_ID, 0, day_ago - datetime.timedelta(days=1), day_ago) == 0

    def test_reversed_window_is_rejected(self, hiscores):
        now = utcnow()
        with pytest.raises(ValidationError):
            hiscores.count_new_scores(USER_ID, 0, now, now - datetime.timedelta(days=1))

def test_grade_order():
    assert grade_value('XH') > grade_value('X') > grade_value('SH') > grade_value('S') > grade_value('A')
    assert grade_value('D') > grade_value('F')
    assert grade_value('??') == -1

def wait_for_each_other_after(monkeypatch, method_name):
    """
    Make two worker threads both finish their first call to a StorageService method before
    either goes on, so their read-then-write sequences interleave.
    """
    barrier = threading.Barrier(2, timeout=10)
    waited = set()
    original = getattr(StorageService, method_name)

    def interleaved(self, *args, **kwargs):
        result = original(self, *args, **kwargs)
        thread = threading.current_thread()
        if thread is not threading.main_thread() and thread.ident not in waited:
            waited.add(thread.ident)
            barrier.wait()
        return result

    monkeypatch.setattr(StorageService, method_name, interleaved)

def run_together(*jobs):
    results, errors = [], []

    def run(job):
        try:
            results.append(job())
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=run, args=(job,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors

class TestConcurrentWriters:

    def test_trackers_racing_on_one_beatmap_keep_a_single_best(self, database, monkeypatch):
        first = HighScoreTracker(database)
        first.ingest_score(USER_ID, BEATMAP_ID, 0, raw_score(score='500000'), username=USERNAME)
        second = HighScoreTracker(database)

        wait_for_each_other_after(monkeypatch, 'current_best_row')
        results, errors = run_together(
            lambda: first.ingest_score(USER_ID, BEATMAP_ID, 0,
                                       raw_score(score='600000', score_time='2024-01-02 10:00:00')),
            lambda: second.ingest_score(USER_ID, BEATMAP_ID, 0,
                                        raw_score(score='700000', score_time='2024-01-03 10:00:00')),
        )
        monkeypatch.undo()

        assert not errors
        assert sorted(r.attempts for r in results) == [1, 2]
        history = first.score_history(USER_ID, BEATMAP_ID, 0)
        assert sorted(s.score for s in history) == [500000, 600000, 700000]
        assert [s.score for s in history if s.is_best] == [700000]
        assert first.current_best(USER_ID, BEATMAP_ID, 0).score == 700000

    def test_first_scores_for_a_new_user_on_different_beatmaps(self, hiscores, database, monkeypatch):
        wait_for_each_other_after(monkeypatch, 'get_user')
        results, errors = run_together(
            lambda: hiscores.ingest_score(USER_ID, 1, 0, raw_score(beatmap_id='1'), username=USERNAME),
            lambda: hiscores.ingest_score(USER_ID, 2, 0, raw_score(beatmap_id='2'), username=USERNAME),
        )
        monkeypatch.undo()

        assert not errors
        assert [r.status for r in results] == [ScoreIngestStatus.NEW] * 2
        with database.session() as session:
            assert session.query(User).count() == 1
            assert session.query(Hiscore).filter(Hiscore.is_best.is_(True)).count() == 2

    def test_moved_best_is_retried(self, tracker, monkeypatch):
        original = StorageService.move_best
        calls = []

        def flaky_move(self, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflict("best moved underneath us")
            return original(self, *args, **kwargs)

        monkeypatch.setattr(StorageService, 'move_best', flaky_move)
        result = tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                      raw_score(score='950000', score_time='2024-01-02 10:00:00'))

        assert result.status == ScoreIngestStatus.IMPROVED
        assert result.attempts == 2
        assert [s.score for s in tracker.score_history(USER_ID, BEATMAP_ID, 0)] == [900000, 950000]

    def test_conflict_is_surfaced_after_retries(self, tracker, monkeypatch):
        def always_conflicts(self, *args, **kwargs):
            raise ConcurrencyConflict("best moved underneath us")

        monkeypatch.setattr(StorageService, 'move_best', always_conflicts)
        with pytest.raises(ConcurrencyConflict):
            tracker.ingest_score(USER_ID, BEATMAP_ID, 0,
                                 raw_score(score='950000', score_time='2024-01-02 10:00:00'))
        monkeypatch.undo()
        assert len(tracker.score_history(USER_ID, BEATMAP_ID, 0)) == 1

    def test_storage_refuses_a_second_best(self, tracker, database):
        with pytest.raises(ConcurrencyConflict):
            with database.session() as session:
                storage = StorageService(session)
                extra = storage.append_score(
                    USER_ID, BEATMAP_ID, GameMode.STANDARD,
                    RawScore.model_validate(raw_score(score='990000', score_time='2024-01-09 10:00:00')),
                    status=ScoreIngestStatus.IMPROVED.value, is_best=False
                )
                storage.move_best(None, extra)
        assert [s.is_best for s in tracker.score_history(USER_ID, BEATMAP_ID, 0)] == [True]
