from .anchor_transfer import AnchorTransfer
from .anchors import AnchorSet, find_transfer_anchors, transfer_data
from .base import BaseTransferStrategy, TransferResult
from .knn import KNNTransfer

__all__ = [
    "BaseTransferStrategy",
    "TransferResult",
    "AnchorSet",
    "find_transfer_anchors",
    "transfer_data",
    "AnchorTransfer",
    "KNNTransfer",
]
