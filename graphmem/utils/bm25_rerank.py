"""
Lexical reranker for short relation triples based on BM25+.

BM25+ keeps every IDF positive, so a term shared by most of a small pool still counts.
"""

from typing import Any, Dict, List, Optional, Sequence

from rank_bm25 import BM25Plus

from .logging_config import get_logger

logger = get_logger(__name__)


class BM25Rerank:
    """Pure in-memory BM25 scoring; the corpus is rebuilt on every call."""

    def __init__(self, k1: float = 1.5, b: float = 0.75, delta: float = 1.0):
        self.k1 = k1
        self.b = b
        self.delta = delta

    def rerank(self,
               query_tokens: Sequence[str],
               documents: List[List[str]],
               top_k: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Rank tokenized documents against tokenized query.

        Args:
            query_tokens: Query terms
            documents: One token list per candidate (e.g. [source, relationship, destination])
            top_k: Number of results to return (default: all documents)

        Returns:
            List of {'index', 'relevance_score', 'document'} sorted by descending score,
            ties keep corpus order
        """
        if not documents or not query_tokens:
            return []

        if top_k is None:
            top_k = len(documents)

        if not any(documents):
            scores = [0.0] * len(documents)
        else:
            bm25 = BM25Plus([list(doc) for doc in documents], k1=self.k1, b=self.b, delta=self.delta)
            scores = [float(score) for score in bm25.get_scores(list(query_tokens))]

        # sorted() is stable, so equal scores stay in corpus order
        order = sorted(range(len(documents)), key=lambda i: scores[i], reverse=True)

        results = [{'index': i, 'relevance_score': scores[i], 'document': documents[i]} for i in order[:top_k]]
        logger.debug(f'BM25 reranked {len(documents)} documents, returning {len(results)}')
        return results
