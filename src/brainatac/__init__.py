"""Analysis of single-cell chromatin accessibility in the adult mouse brain."""

from . import de, io, pipeline, pl, pp, qc, strategies, tl
from .annotation import GeneAnnotation
from .config import PipelineConfig
from .fragments import FragmentFile

__version__ = "0.1.0"

__all__ = [
    "io",
    "qc",
    "pp",
    "tl",
    "de",
    "pl",
    "strategies",
    "pipeline",
    "GeneAnnotation",
    "FragmentFile",
    "PipelineConfig",
    "__version__",
]
