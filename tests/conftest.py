from datetime import datetime, timezone

import pytest

from toppicks.profiles import CandidateProfile
from toppicks.ranking import rank
from toppicks.scoring import ScoringWeights
from toppicks.storage import InMemoryTopPicksStore, JsonFileTopPicksStore

AS_OF = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _profile(profile_id, **overrides):
    defaults = dict(
        age=30,
        latitude=40.7128,
        longitude=-74.0060,
        interests={"hiking", "music"},
        height_cm=175,
        ethnicity="asian",
        occupation="tech",
        profile_quality=0.8,
        last_active=AS_OF,
    )
    defaults.update(overrides)
    return CandidateProfile(profile_id=profile_id, **defaults)


@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def make_profile():
    return _profile


@pytest.fixture
def subject():
    return _profile(
        "subject",
        ethnicity_preferences={"asian", "hispanic"},
        preferred_height_range=(165, 185),
    )


@pytest.fixture
def weights():
    return ScoringWeights()


@pytest.fixture
def make_entries(subject, weights):
    """Rank candidate ids against the subject; earlier ids rank higher."""
    def _make(candidate_ids, subject_profile=None):
        subj = subject_profile or subject
        candidates = [
            _profile(cid, age=30 + i, profile_quality=0.9 - 0.04 * i)
            for i, cid in enumerate(candidate_ids)
        ]
        return rank(subj, candidates, weights=weights, as_of=AS_OF)
    return _make


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryTopPicksStore()
    return JsonFileTopPicksStore(str(tmp_path / "store"))
