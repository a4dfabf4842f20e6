from quote_compare.reconciliation.aggregator import aggregate
from quote_compare.reconciliation.normalizer import DUPLICATE_POLICIES, NormalizationResult, normalize
from quote_compare.reconciliation.references import ReferenceChain, ReferenceIndex

__all__ = [
    "DUPLICATE_POLICIES",
    "NormalizationResult",
    "ReferenceChain",
    "ReferenceIndex",
    "aggregate",
    "normalize",
]
