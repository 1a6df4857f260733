import random
from datetime import datetime, timedelta

import pytest

from memora.domain.constants import FSRS_DEFAULT_WEIGHTS
from memora.domain.models import CardQueue, DeckConfig, Rating, SchedulingModel
from memora.domain.scheduling import schedule
from memora.domain.scheduling.fsrs import FsrsModel, elapsed_days, retrievability


@pytest.fixture
def fsrs_config():
    return DeckConfig(scheduling_model=SchedulingModel.FSRS)


@pytest.fixture
def fsrs_review_card(make_card, now):
    return make_card(
        queue=CardQueue.REVIEW,
        interval=10,
        repetitions=3,
        stability=10.0,
        difficulty=5.0,
        next_review_at=now.date(),
        last_reviewed_at=now - timedelta(days=10),
    )


@pytest.mark.parametrize(
    "rating, interval",
    [(Rating.HARD, 1), (Rating.GOOD, 2), (Rating.EASY, 8)],
)
def test_first_rating_uses_initial_stability(make_card, fsrs_config, now, rating, interval):
    result = schedule(make_card(), rating, fsrs_config, now)

    assert result.queue == CardQueue.REVIEW
    assert result.stability == pytest.approx(FSRS_DEFAULT_WEIGHTS[rating - 1])
    assert result.interval == interval
    assert result.repetitions == 1


def test_first_again_enters_learning(make_card, fsrs_config, now):
    result = schedule(make_card(), Rating.AGAIN, fsrs_config, now)

    assert result.queue == CardQueue.LEARNING
    assert result.stability == pytest.approx(0.212)
    assert result.due_timestamp == now + timedelta(minutes=1)


def test_initial_difficulty_for_good(make_card, fsrs_config, now):
    result = schedule(make_card(), Rating.GOOD, fsrs_config, now)

    assert result.difficulty == pytest.approx(2.1181, abs=1e-3)


def test_recall_grows_stability(fsrs_review_card, fsrs_config, now):
    result = schedule(fsrs_review_card, Rating.GOOD, fsrs_config, now)

    assert result.queue == CardQueue.REVIEW
    assert result.stability > 10.0
    assert result.interval > 10
    assert result.repetitions == 4


def test_lapse_shrinks_stability(fsrs_review_card, fsrs_config, now):
    result = schedule(fsrs_review_card, Rating.AGAIN, fsrs_config, now)

    assert result.queue == CardQueue.RELEARNING
    assert result.stability < 10.0
    assert result.lapses == 1
    assert result.due_timestamp == now + timedelta(minutes=10)


def test_retrievability_is_ninety_percent_after_one_stability():
    model = FsrsModel(FSRS_DEFAULT_WEIGHTS)

    assert model.retrievability(10, 10.0) == pytest.approx(0.9)
    assert model.retrievability(0, 10.0) == pytest.approx(1.0)


def test_card_retrievability(fsrs_review_card, make_card, fsrs_config, now):
    assert retrievability(make_card(), fsrs_config, now) == 1.0
    assert retrievability(fsrs_review_card, fsrs_config, now) == pytest.approx(0.9)
    assert elapsed_days(fsrs_review_card, now) == 10


def test_higher_retention_means_shorter_intervals(fsrs_review_card, now):
    relaxed = DeckConfig(scheduling_model=SchedulingModel.FSRS, request_retention=0.8)
    strict = DeckConfig(scheduling_model=SchedulingModel.FSRS, request_retention=0.95)

    assert (
        schedule(fsrs_review_card, Rating.GOOD, strict, now).interval
        < schedule(fsrs_review_card, Rating.GOOD, relaxed, now).interval
    )


def test_difficulty_stays_bounded(make_card, now):
    config = DeckConfig(scheduling_model=SchedulingModel.FSRS, maximum_interval=365)
    rng = random.Random(7)
    card = make_card()
    clock = now

    for _ in range(200):
        card = schedule(card, rng.choice(list(Rating)), config, clock)
        assert 1.0 <= card.difficulty <= 10.0
        assert card.stability > 0
        if card.queue == CardQueue.REVIEW:
            clock = datetime.combine(card.next_review_at, clock.timetz())
        else:
            clock = card.due_timestamp
