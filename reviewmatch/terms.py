"""
Sparse term-document store for reviewmatch.

Review text is reduced to a bag of words: one sparse row of term counts per
review that kept at least one vocabulary term. Reviews without surviving terms
have no row at all.
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import pyspark.sql.functions as F
from pyspark.ml.feature import RegexTokenizer, StopWordsRemover
from pyspark.sql import DataFrame, SparkSession
from pyspark.sql.types import LongType, StringType, StructField, StructType
from scipy import sparse
from sklearn.preprocessing import normalize

from .utils import _require_columns

TRIPLE_SCHEMA = StructType(
    [
        StructField("doc_id", LongType(), False),
        StructField("term", StringType(), False),
        StructField("count", LongType(), False),
    ]
)


class TermMatrix:
    """
    Sparse (document x term) count matrix keyed by document identifier.

    Rows that hold no counts are dropped on construction, so ``has_row`` is
    False exactly for documents that produced no retained term.
    """

    def __init__(
        self,
        matrix,
        doc_ids: Sequence[int],
        vocabulary: Optional[List[str]] = None,
    ):
        matrix = sparse.csr_matrix(matrix)
        doc_ids = np.asarray(doc_ids, dtype=np.int64)
        if matrix.shape[0] != len(doc_ids):
            raise ValueError(
                f"Matrix has {matrix.shape[0]} rows but {len(doc_ids)} document ids were given"
            )
        if len(np.unique(doc_ids)) != len(doc_ids):
            raise ValueError("Document ids must be unique")
        if vocabulary is not None and len(vocabulary) != matrix.shape[1]:
            raise ValueError(
                f"Matrix has {matrix.shape[1]} columns but the vocabulary has {len(vocabulary)} terms"
            )

        keep = matrix.getnnz(axis=1) > 0
        self.matrix = matrix[keep]
        self.doc_ids = doc_ids[keep]
        self.vocabulary = list(vocabulary) if vocabulary is not None else None
        self._index = pd.Index(self.doc_ids)
        if self.matrix.shape[0] and self.matrix.shape[1]:
            self._unit_rows = normalize(self.matrix.astype(np.float64), norm="l2", axis=1)
        else:
            self._unit_rows = self.matrix.astype(np.float64)

    def __len__(self) -> int:
        return len(self.doc_ids)

    def __contains__(self, doc_id) -> bool:
        return self.has_row(doc_id)

    @property
    def n_terms(self) -> int:
        return self.matrix.shape[1]

    def has_row(self, doc_id) -> bool:
        return int(doc_id) in self._index

    def present(self, doc_ids: Sequence[int]) -> np.ndarray:
        """Boolean mask: which of ``doc_ids`` have a row."""
        doc_ids = np.asarray(doc_ids, dtype=np.int64)
        if len(doc_ids) == 0:
            return np.zeros(0, dtype=bool)
        return self._index.get_indexer(doc_ids) >= 0

    def _positions(self, doc_ids) -> np.ndarray:
        positions = self._index.get_indexer(np.asarray(doc_ids, dtype=np.int64))
        if np.any(positions < 0):
            missing = np.asarray(doc_ids)[positions < 0]
            raise KeyError(f"No term row for document id(s): {missing[:10].tolist()}")
        return positions

    def row(self, doc_id) -> sparse.csr_matrix:
        """Raw count row (1 x n_terms) for one document."""
        return self.matrix[self._positions([doc_id])]

    def rows(self, doc_ids: Sequence[int]) -> sparse.csr_matrix:
        return self.matrix[self._positions(doc_ids)]

    def cosine(self, doc_a, doc_b) -> float:
        """Cosine similarity between two stored documents."""
        a, b = self._positions([doc_a, doc_b])
        return float(self._unit_rows[a].multiply(self._unit_rows[b]).sum())

    def cosine_to(self, anchor_id, doc_ids: Sequence[int]) -> np.ndarray:
        """Cosine similarity of the anchor row against each row in ``doc_ids``."""
        if len(doc_ids) == 0:
            return np.zeros(0, dtype=np.float64)
        anchor = self._unit_rows[self._positions([anchor_id])]
        others = self._unit_rows[self._positions(doc_ids)]
        return np.asarray((others @ anchor.T).todense()).ravel()

    def to_triples(self) -> pd.DataFrame:
        """Long form (doc_id, term, count), one row per non-zero cell."""
        coo = self.matrix.tocoo()
        if self.vocabulary is None:
            terms = coo.col.astype(str)
        else:
            terms = np.asarray(self.vocabulary, dtype=object)[coo.col]
        return pd.DataFrame(
            {
                "doc_id": self.doc_ids[coo.row].astype(np.int64),
                "term": terms,
                "count": coo.data.astype(np.int64),
            }
        )

    @classmethod
    def from_triples(cls, triples: pd.DataFrame) -> "TermMatrix":
        """Build from a long (doc_id, term, count) table; repeated cells are summed."""
        _require_columns(triples.columns, ["doc_id", "term", "count"], "Term triples")
        if len(triples) == 0:
            return cls(sparse.csr_matrix((0, 0), dtype=np.int64), [], [])

        doc_codes, doc_ids = pd.factorize(triples["doc_id"].astype(np.int64), sort=True)
        term_codes, vocabulary = pd.factorize(triples["term"].astype(str), sort=True)
        counts = triples["count"].to_numpy(dtype=np.int64)
        if np.any(counts < 0):
            raise ValueError("Term counts must be non-negative")

        matrix = sparse.coo_matrix(
            (counts, (doc_codes, term_codes)),
            shape=(len(doc_ids), len(vocabulary)),
        ).tocsr()
        matrix.sum_duplicates()
        return cls(matrix, np.asarray(doc_ids), list(vocabulary))


def build_term_matrix(
    reviews_df: DataFrame,
    id_col: str,
    text_col: str,
    min_count: int = 10,
    max_count: int = 1000,
    sample_frac: float = 1.0,
    seed: int = 42,
    remove_stop_words: bool = True,
    verbose: bool = True,
) -> TermMatrix:
    """
    Tokenize review text and build the filtered term-document matrix.

    Parameters
    ----------
    reviews_df : DataFrame
        Reviews with an identifier and a text column
    id_col : str
        Integer review identifier (same ids as the record table)
    text_col : str
        Review text column
    min_count, max_count : int
        A term is kept when its total count across the sampled corpus lies in
        [min_count, max_count]
    sample_frac : float
        Fraction of reviews to sample before counting (1.0 keeps all)
    seed : int
        Sampling seed
    remove_stop_words : bool
        Drop Spark's default English stop words
    verbose : bool
        If True, print vocabulary and coverage figures

    Returns
    -------
    TermMatrix
        Counts per (review, retained term)
    """
    _require_columns(reviews_df.columns, [id_col, text_col], "Reviews DataFrame")
    if min_count > max_count:
        raise ValueError(f"min_count ({min_count}) must be <= max_count ({max_count})")

    docs = reviews_df.select(
        F.col(id_col).cast("long").alias("doc_id"),
        F.coalesce(F.col(text_col).cast("string"), F.lit("")).alias("text"),
    )
    if sample_frac < 1.0:
        docs = docs.sample(withReplacement=False, fraction=sample_frac, seed=seed)

    tokens = RegexTokenizer(
        inputCol="text", outputCol="tokens", pattern="[^a-z0-9']+", toLowercase=True, minTokenLength=2
    ).transform(docs)
    token_col = "tokens"
    if remove_stop_words:
        tokens = StopWordsRemover(inputCol="tokens", outputCol="terms").transform(tokens)
        token_col = "terms"

    doc_counts = (
        tokens.select("doc_id", F.explode(F.col(token_col)).alias("term"))
        .groupBy("doc_id", "term")
        .count()
    )

    # Keep terms whose corpus-wide frequency is within the band
    kept_terms = (
        doc_counts.groupBy("term")
        .agg(F.sum("count").alias("total"))
        .filter((F.col("total") >= min_count) & (F.col("total") <= max_count))
        .select("term")
    )
    triples = (
        doc_counts.join(kept_terms, "term")
        .select("doc_id", "term", F.col("count").cast("long").alias("count"))
        .toPandas()
    )
    term_matrix = TermMatrix.from_triples(triples)

    if verbose:
        n_docs = docs.count()
        print(f"Term matrix: {term_matrix.n_terms} terms kept "
              f"(total count in [{min_count}, {max_count}])")
        print(f"  documents with terms: {len(term_matrix)} of {n_docs}")

    return term_matrix


def write_term_matrix(
    term_matrix: TermMatrix, spark: SparkSession, path: str, mode: str = "overwrite"
) -> None:
    """Persist the matrix as a parquet table of (doc_id, term, count) triples."""
    spark.createDataFrame(
        term_matrix.to_triples(), schema=TRIPLE_SCHEMA
    ).write.mode(mode).parquet(path)


def read_term_matrix(spark: SparkSession, path: str) -> TermMatrix:
    """Load a matrix written by write_term_matrix()."""
    triples = spark.read.parquet(path)
    _require_columns(triples.columns, ["doc_id", "term", "count"], f"Term matrix at {path}")
    return TermMatrix.from_triples(triples.select("doc_id", "term", "count").toPandas())
