import uuid
from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given, settings, strategies as st

from conftest import FakeLabelingProvider
from feedlens.models.pipeline import ArticleSnapshot, ClusterSettings
from feedlens.services.clustering import (
    ClusteringManager,
    cluster_by_time_windows,
    fallback_clusters,
    form_clusters,
    passes_gates,
)
from feedlens.services.labeling import ClusterLabeler
from feedlens.services.retry import BackoffPolicy
from feedlens.utils.dates import utcnow
from feedlens.utils.vectors import cosine_similarity

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)

SENATE = (
    "Senate passes budget bill",
    "The Senate passed the federal budget bill after a late vote on government funding.",
)
CONGRESS = (
    "Congress approves funding package",
    "Congress approved the federal budget bill and a government funding package in a late vote.",
)
LAWMAKERS = (
    "Lawmakers back federal budget bill",
    "Lawmakers voted for the federal budget bill, keeping government funding in place.",
)
BAKERY = ("Local bakery wins award", "A neighbourhood bakery took first prize for sourdough.")

VECTORS = {
    "senate": [1.0, 0.0, 0.0, 0.0],
    "congress": [0.98, 0.2, 0.0, 0.0],
    "lawmakers": [0.97, 0.0, 0.24, 0.0],
    "bakery": [0.0, 0.0, 0.0, 1.0],
}


def snapshot(story, feed_name, hours_ago, embedding=None, now=NOW):
    title, excerpt = story
    return ArticleSnapshot(
        id=uuid.uuid4(),
        title=title,
        excerpt=excerpt,
        feed_id=uuid.uuid4(),
        feed_name=feed_name,
        published_at=now - timedelta(hours=hours_ago) if hours_ago is not None else None,
        embedding=embedding,
    )


def budget_story_snapshots(feeds=("Capitol Wire", "Daily Ledger", "Metro Times")):
    return [
        snapshot(SENATE, feeds[0], 1, VECTORS["senate"]),
        snapshot(CONGRESS, feeds[1], 2, VECTORS["congress"]),
        snapshot(LAWMAKERS, feeds[2], 3, VECTORS["lawmakers"]),
    ]


def test_three_sources_form_one_cluster():
    articles = [*budget_story_snapshots(), snapshot(BAKERY, "Metro Times", 1, VECTORS["bakery"])]

    clusters = form_clusters(articles, ClusterSettings())

    assert len(clusters) == 1
    cluster = clusters[0]
    assert cluster.sources == {"Capitol Wire", "Daily Ledger", "Metro Times"}
    assert {member.title for member in cluster.members} == {SENATE[0], CONGRESS[0], LAWMAKERS[0]}
    assert 0.9 < cluster.avg_similarity <= 1.0


def test_two_sources_never_form_a_cluster():
    articles = budget_story_snapshots(feeds=("Capitol Wire", "Daily Ledger", "Capitol Wire"))

    assert form_clusters(articles, ClusterSettings()) == []
    assert fallback_clusters(articles, ClusterSettings()) == []


def test_time_window_gate_rejects_spread_out_coverage():
    articles = budget_story_snapshots()
    articles[2] = snapshot(LAWMAKERS, "Metro Times", 80, VECTORS["lawmakers"])

    assert form_clusters(articles, ClusterSettings(time_window_hours=48)) == []


def test_keyword_check_blocks_similar_vectors_without_shared_terms():
    articles = budget_story_snapshots()
    articles[2] = snapshot(BAKERY, "Metro Times", 3, VECTORS["lawmakers"])

    assert form_clusters(articles, ClusterSettings()) == []


def test_cross_validation_prevents_similarity_chaining():
    shared = ("Budget vote", "The federal budget bill vote on government funding.")
    first = snapshot(shared, "Capitol Wire", 3, [1.0, 0.0, 0.0, 0.0])
    bridge = snapshot(shared, "Daily Ledger", 1, [0.7071, 0.7071, 0.0, 0.0])
    last = snapshot(shared, "Metro Times", 2, [0.0, 1.0, 0.0, 0.0])
    settings = ClusterSettings(min_sources=2, min_articles=2)

    clusters = form_clusters([first, bridge, last], settings)

    for cluster in clusters:
        ids = set(cluster.article_ids)
        assert not {first.id, last.id} <= ids
        for left in cluster.members:
            for right in cluster.members:
                if left.id != right.id:
                    assert cosine_similarity(left.embedding, right.embedding) >= settings.similarity_threshold


def test_keyword_fallback_groups_articles_without_embeddings():
    articles = [snapshot(SENATE, "Capitol Wire", 1), snapshot(CONGRESS, "Daily Ledger", 2), snapshot(LAWMAKERS, "Metro Times", 3)]

    clusters = fallback_clusters(articles, ClusterSettings())

    assert len(clusters) == 1
    assert len(clusters[0].members) == 3


def test_time_buckets_group_unrelated_articles_in_same_six_hours():
    day = datetime(2024, 1, 1, tzinfo=UTC)
    articles = [
        snapshot(("Bakery opens downtown", None), "Capitol Wire", None),
        snapshot(("Stock market rallies", None), "Daily Ledger", None),
        snapshot(("Rain expected tomorrow", None), "Metro Times", None),
        snapshot(("Chess champion retires", None), "Metro Times", None),
    ]
    for offset, article in zip((1, 2, 3, 13), articles):
        article.published_at = day + timedelta(hours=offset)

    clusters = cluster_by_time_windows(articles, ClusterSettings())

    assert len(clusters) == 1
    assert len(clusters[0].members) == 3
    assert cluster_by_time_windows(articles, ClusterSettings(), exclude=[articles[0].id]) == []


feed_names = st.sampled_from(["Capitol Wire", "Daily Ledger", "Metro Times", "Harbor News"])
article_specs = st.lists(
    st.tuples(
        feed_names,
        st.floats(min_value=0, max_value=120, allow_nan=False),
        st.lists(st.integers(-3, 3), min_size=4, max_size=4),
    ),
    max_size=12,
)


@settings(deadline=None, max_examples=60)
@given(
    specs=article_specs,
    min_sources=st.integers(1, 4),
    window=st.sampled_from([6.0, 24.0, 48.0]),
)
def test_accepted_clusters_always_pass_the_gates(specs, min_sources, window):
    articles = [snapshot(SENATE, feed, hours, [float(value) for value in vector]) for feed, hours, vector in specs]
    settings_ = ClusterSettings(min_sources=min_sources, min_articles=2, time_window_hours=window)

    clusters = form_clusters(articles, settings_)

    seen = set()
    for cluster in clusters:
        assert len(cluster.sources) >= min_sources
        assert passes_gates(cluster, settings_)
        dates = [member.published_at for member in cluster.members]
        assert (max(dates) - min(dates)).total_seconds() / 3600 <= window
        assert not seen & set(cluster.article_ids)
        seen.update(cluster.article_ids)


@pytest.fixture
def feeds(seed):
    return {
        name: seed.feed(name, subscribers=["u1"])
        for name in ("Capitol Wire", "Daily Ledger", "Metro Times")
    }


def seed_budget_stories(seed, feeds):
    return [
        seed.article(feeds["Capitol Wire"], *SENATE, hours_ago=1, embedding=VECTORS["senate"]),
        seed.article(feeds["Daily Ledger"], *CONGRESS, hours_ago=2, embedding=VECTORS["congress"]),
        seed.article(feeds["Metro Times"], *LAWMAKERS, hours_ago=3, embedding=VECTORS["lawmakers"]),
    ]


def make_manager(store, config, provider=None, sleeps=None):
    return ClusteringManager(store, ClusterLabeler(provider, policy=BackoffPolicy(sleep=sleeps or (lambda _: None))), config)


def test_generate_clusters_persists_labels_and_members(store, seed, feeds, config):
    ids = seed_budget_stories(seed, feeds)
    seed.article(feeds["Metro Times"], *BAKERY, hours_ago=1, embedding=VECTORS["bakery"])
    manager = make_manager(store, config, FakeLabelingProvider())

    result = manager.generate_clusters(hours_back=48)

    assert result.method == "vector"
    assert result.clusters_created == 1
    assert result.articles_processed == 4
    view = result.clusters[0]
    assert view.topic == "Budget deal clears Congress"
    assert view.summary == "Lawmakers approved the federal budget bill."
    assert sorted(view.sources) == ["Capitol Wire", "Daily Ledger", "Metro Times"]
    assert set(view.article_ids) == set(ids)
    assert view.expires_at > utcnow() + timedelta(hours=167)
    assert all(seed.get_article(article_id).cluster_id == view.id for article_id in ids)


def test_generate_clusters_uses_fallback_label_without_provider(store, seed, feeds, config):
    seed_budget_stories(seed, feeds)
    manager = make_manager(store, config)

    view = manager.generate_clusters(hours_back=48).clusters[0]

    assert view.topic == SENATE[0]
    assert view.summary == SENATE[1]


def test_two_source_stories_produce_no_cluster(store, seed, feeds, config):
    seed.article(feeds["Capitol Wire"], *SENATE, hours_ago=1, embedding=VECTORS["senate"])
    seed.article(feeds["Daily Ledger"], *CONGRESS, hours_ago=2, embedding=VECTORS["congress"])
    seed.article(feeds["Capitol Wire"], *LAWMAKERS, hours_ago=3, embedding=VECTORS["lawmakers"])

    result = make_manager(store, config).generate_clusters(hours_back=48)

    assert result.clusters_created == 0
    assert result.method == "none"


def test_keyword_fallback_runs_when_embeddings_are_missing(store, seed, feeds, config):
    seed.article(feeds["Capitol Wire"], *SENATE, hours_ago=1)
    seed.article(feeds["Daily Ledger"], *CONGRESS, hours_ago=2)
    seed.article(feeds["Metro Times"], *LAWMAKERS, hours_ago=3)

    result = make_manager(store, config).generate_clusters(hours_back=48)

    assert result.method == "keyword"
    assert result.clusters_created == 1


def test_wrong_length_embeddings_are_ignored(store, seed, feeds, config):
    seed.article(feeds["Capitol Wire"], *SENATE, hours_ago=1, embedding=[1.0, 0.0])
    seed.article(feeds["Daily Ledger"], *CONGRESS, hours_ago=2, embedding=[0.98, 0.2])
    seed.article(feeds["Metro Times"], *LAWMAKERS, hours_ago=3, embedding=[0.97, 0.0])

    result = make_manager(store, config).generate_clusters(hours_back=48)

    assert result.method == "keyword"


def test_user_clusters_sorted_by_relevance_and_exclude_expired(store, config):
    now = utcnow()

    def save(title, relevance, expires_in_hours, user_id=None):
        return store.save_cluster(
            title=title,
            summary="",
            article_ids=[],
            source_feeds=["A", "B", "C"],
            avg_similarity=0.8,
            relevance_score=relevance,
            timeframe_start=None,
            timeframe_end=None,
            expires_at=now + timedelta(hours=expires_in_hours),
            generation_method="vector",
            user_id=user_id,
        )

    save("Low", 5.0, 10)
    save("High", 20.0, 10)
    save("Mine", 12.0, 10, user_id="u1")
    save("Theirs", 50.0, 10, user_id="u2")
    save("Expired", 99.0, -1)
    manager = make_manager(store, config)

    clusters = manager.get_user_clusters("u1")

    assert [cluster.topic for cluster in clusters] == ["High", "Mine", "Low"]
    scores = [cluster.relevance_score for cluster in clusters]
    assert scores == sorted(scores, reverse=True)
    assert [cluster.topic for cluster in manager.get_user_clusters()] == ["High", "Low"]

    assert manager.expire_old_clusters() == 1
    assert manager.expire_old_clusters() == 0


def test_dangling_cluster_reference_after_expiry(store, seed, feeds, config):
    ids = seed_budget_stories(seed, feeds)
    manager = make_manager(store, config)
    manager.generate_clusters(hours_back=48)
    cluster_id = seed.get_article(ids[0]).cluster_id

    store.delete_expired_clusters(utcnow() + timedelta(days=30))

    assert seed.get_article(ids[0]).cluster_id == cluster_id
    assert manager.get_user_clusters() == []


def test_cluster_settings_row_overrides_config(store, config):
    store.save_cluster_settings(min_cluster_sources=2, cluster_similarity_threshold=0.75)

    settings_ = make_manager(store, config).load_settings()

    assert settings_.min_sources == 2
    assert settings_.similarity_threshold == 0.75
    assert settings_.min_articles == config.min_cluster_articles


def test_find_similar_articles(store, seed, feeds, config):
    source = seed.article(feeds["Capitol Wire"], "Source story", hours_ago=1, embedding=[1.0, 0.0, 0.0, 0.0])
    for index in range(6):
        seed.article(feeds["Daily Ledger"], f"Near story {index}", hours_ago=1, embedding=[1.0, 0.05 * (index + 1), 0.0, 0.0])
    seed.article(feeds["Metro Times"], "Borderline story", hours_ago=1, embedding=[0.5, 0.6, 0.0, 0.0])
    seed.article(feeds["Metro Times"], "Unrelated story", hours_ago=1, embedding=[0.0, 1.0, 0.0, 0.0])
    manager = make_manager(store, config)

    similar = manager.find_similar_articles(source)

    assert len(similar) == 5
    assert source not in {match.article_id for match in similar}
    scores = [match.similarity_score for match in similar]
    assert scores == sorted(scores, reverse=True)
    assert all(score >= 0.7 for score in scores)
    assert [match.title for match in similar] == [f"Near story {index}" for index in range(5)]

    restricted = manager.find_similar_articles(source, feed_ids=[feeds["Metro Times"]])
    assert restricted == []
