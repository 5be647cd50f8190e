"""rbdconv export - streaming raw image encoder."""
from .encoder import DiffEncoder, EncodeStats, EncoderStateError, image_size, raw_to_rbd
from .streams import SparseChunkEmitter, StripeBuffer

__all__ = [
    "DiffEncoder",
    "EncodeStats",
    "EncoderStateError",
    "SparseChunkEmitter",
    "StripeBuffer",
    "image_size",
    "raw_to_rbd",
]
