"""
Tests for the BM25 reranker.
"""

from graphmem.utils.bm25_rerank import BM25Rerank

DOCUMENTS = [
    ['alice', 'likes', 'pizza'],
    ['alice', 'likes', 'tea'],
    ['alice', 'works_at', 'acme'],
]


def test_matching_terms_rank_first():
    """The document sharing the rarest query term wins."""
    ranked = BM25Rerank().rerank(['alice', 'works_at'], DOCUMENTS)

    assert ranked[0]['index'] == 2
    assert ranked[0]['document'] == ['alice', 'works_at', 'acme']
    assert len(ranked) == 3


def test_top_k_limits_results():
    """top_k bounds the result count."""
    assert len(BM25Rerank().rerank(['tea'], DOCUMENTS, top_k=2)) == 2


def test_ties_keep_corpus_order():
    """Documents with equal scores stay in input order."""
    ranked = BM25Rerank().rerank(['unrelated'], DOCUMENTS)

    assert [r['index'] for r in ranked] == [0, 1, 2]
    assert all(r['relevance_score'] == 0.0 for r in ranked)


def test_empty_inputs():
    """No documents or no query terms yield nothing."""
    assert BM25Rerank().rerank(['alice'], []) == []
    assert BM25Rerank().rerank([], DOCUMENTS) == []


def test_all_empty_documents_score_zero():
    """A corpus of empty documents is returned unscored."""
    ranked = BM25Rerank().rerank(['alice'], [[], []])

    assert [r['relevance_score'] for r in ranked] == [0.0, 0.0]


def test_small_pool_still_ranks_matches_first():
    """In a two-document pool the matching document outranks the other."""
    ranked = BM25Rerank().rerank(['alice'], [['bob', 'likes', 'burger'], ['alice', 'loves', 'pizza']])

    assert [r['index'] for r in ranked] == [1, 0]
    assert ranked[0]['relevance_score'] > ranked[1]['relevance_score']


def test_term_shared_by_every_document_scores_positive():
    """A query term present in the whole pool still contributes to the score."""
    ranked = BM25Rerank().rerank(['alice'], [['alice', 'likes', 'tea'], ['alice', 'works_at', 'acme']])

    assert all(r['relevance_score'] > 0.0 for r in ranked)
