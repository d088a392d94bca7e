"""Gray code patterns: generation, direct light separation and decoding."""

from .gray_code import (
    binary_to_gray, gray_to_binary, bit_count, decode_gray_codes,
    make_pattern_image, generate_pattern_sequence, effective_resolution,
    read_projector_info, write_projector_info
)
from .direct_light import direct_light_indices, compute_direct_light, estimate_direct_light
from .pattern_decoder import PatternDecoder, DecodeResult, decode_pattern, load_gray_image

__all__ = [
    "binary_to_gray",
    "gray_to_binary",
    "bit_count",
    "decode_gray_codes",
    "make_pattern_image",
    "generate_pattern_sequence",
    "effective_resolution",
    "read_projector_info",
    "write_projector_info",
    "direct_light_indices",
    "compute_direct_light",
    "estimate_direct_light",
    "PatternDecoder",
    "DecodeResult",
    "decode_pattern",
    "load_gray_image"
]
