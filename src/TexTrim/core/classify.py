"""Texture classification by filename suffix rules and DDS header decoding.

The semantic type comes from the path alone. Header decoding only
validates the bytes and reports size/format; it never changes the type.
"""

import logging
import re
import struct
from pathlib import PurePosixPath
from typing import Optional

from ..config import (
    OTHER_PATH_PREFIXES,
    TEXTURE_SUFFIX_RULES,
    ClassifyConfig,
    TextureType,
)
from ..errors import DecodeError
from .paths import normalize_logical_path
from .records import TextureAsset, TextureHeader, VirtualFileEntry

logger = logging.getLogger("texture_optimizer.classify")

DDS_MAGIC = b"DDS "
DDS_HEADER_SIZE = 124
DDS_PIXELFORMAT_SIZE = 32
# magic + header + DX10 extension
HEAD_BYTES = 4 + DDS_HEADER_SIZE + 20

DDPF_ALPHAPIXELS = 0x1
DDPF_ALPHA = 0x2
DDPF_FOURCC = 0x4
DDPF_RGB = 0x40
DDPF_LUMINANCE = 0x20000

_COMPILED_RULES = [(re.compile(p), t) for p, t in TEXTURE_SUFFIX_RULES]

FOURCC_FORMATS = {
    b"DXT1": "BC1_UNORM",
    b"DXT2": "BC2_UNORM",
    b"DXT3": "BC2_UNORM",
    b"DXT4": "BC3_UNORM",
    b"DXT5": "BC3_UNORM",
    b"ATI1": "BC4_UNORM",
    b"BC4U": "BC4_UNORM",
    b"ATI2": "BC5_UNORM",
    b"BC5U": "BC5_UNORM",
}

DXGI_FORMATS = {
    28: "R8G8B8A8_UNORM",
    29: "R8G8B8A8_UNORM_SRGB",
    61: "R8_UNORM",
    71: "BC1_UNORM",
    72: "BC1_UNORM_SRGB",
    74: "BC2_UNORM",
    75: "BC2_UNORM_SRGB",
    77: "BC3_UNORM",
    78: "BC3_UNORM_SRGB",
    80: "BC4_UNORM",
    83: "BC5_UNORM",
    87: "B8G8R8A8_UNORM",
    88: "B8G8R8X8_UNORM",
    95: "BC6H_UF16",
    98: "BC7_UNORM",
    99: "BC7_UNORM_SRGB",
}

_ALPHA_FORMATS = {
    "BC2_UNORM", "BC2_UNORM_SRGB", "BC3_UNORM", "BC3_UNORM_SRGB",
    "R8G8B8A8_UNORM", "R8G8B8A8_UNORM_SRGB", "B8G8R8A8_UNORM",
}


def classify_path(logical_path: str) -> TextureType:
    """Return the texture type implied by a logical path.

    Interface, LOD and terrain textures are OTHER; otherwise the first
    matching stem suffix rule wins and unknown suffixes are DIFFUSE.
    """
    path = normalize_logical_path(logical_path)
    for prefix in OTHER_PATH_PREFIXES:
        if path.startswith(prefix):
            return TextureType.OTHER
    stem = PurePosixPath(path).stem
    for pattern, tex_type in _COMPILED_RULES:
        if pattern.search(stem):
            return tex_type
    return TextureType.DIFFUSE


def is_compressed_format(pixel_format: str) -> bool:
    return pixel_format.startswith("BC")


def _uncompressed_format(pf_flags: int, bit_count: int, masks) -> str:
    r_mask, g_mask, b_mask, a_mask = masks
    if pf_flags & DDPF_RGB:
        if bit_count == 32:
            if r_mask == 0x00FF0000:
                return "B8G8R8A8_UNORM" if a_mask else "B8G8R8X8_UNORM"
            return "R8G8B8A8_UNORM"
        if bit_count == 24:
            return "B8G8R8_UNORM"
        if bit_count == 16:
            return "B5G6R5_UNORM" if not a_mask else "B5G5R5A1_UNORM"
    if pf_flags & DDPF_LUMINANCE:
        return "R8_UNORM" if bit_count == 8 else "R8G8_UNORM"
    if pf_flags & DDPF_ALPHA:
        return "A8_UNORM"
    raise ValueError(f"unsupported uncompressed layout (flags=0x{pf_flags:x}, bits={bit_count})")


def decode_dds_header(head: bytes, label: str = "",
                      max_dimension: int = 16384) -> Optional[TextureHeader]:
    """Decode the leading bytes of a DDS file.

    Returns None when the magic does not match (not a DDS texture).

    Raises:
        DecodeError: the magic matches but the header is truncated or its
            fields are inconsistent.
    """
    if len(head) < 4 or head[:4] != DDS_MAGIC:
        return None
    if len(head) < 4 + DDS_HEADER_SIZE:
        raise DecodeError(f"{label}: truncated DDS header ({len(head)} bytes)")

    (size, _flags, height, width, _pitch, _depth, mip_count) = struct.unpack_from("<7I", head, 4)
    if size != DDS_HEADER_SIZE:
        raise DecodeError(f"{label}: DDS header size {size}, expected {DDS_HEADER_SIZE}")
    (pf_size, pf_flags, fourcc, bit_count,
     r_mask, g_mask, b_mask, a_mask) = struct.unpack_from("<II4s5I", head, 76)
    if pf_size != DDS_PIXELFORMAT_SIZE:
        raise DecodeError(f"{label}: pixel format size {pf_size}, expected {DDS_PIXELFORMAT_SIZE}")
    if width == 0 or height == 0:
        raise DecodeError(f"{label}: zero dimension {width}x{height}")
    if width > max_dimension or height > max_dimension:
        raise DecodeError(f"{label}: dimension {width}x{height} exceeds {max_dimension}")
    if mip_count > 32:
        raise DecodeError(f"{label}: implausible mip count {mip_count}")

    if pf_flags & DDPF_FOURCC:
        if fourcc == b"DX10":
            if len(head) < HEAD_BYTES:
                raise DecodeError(f"{label}: truncated DX10 header extension")
            (dxgi,) = struct.unpack_from("<I", head, 128)
            if dxgi == 0:
                raise DecodeError(f"{label}: DX10 header with unknown DXGI format")
            pixel_format = DXGI_FORMATS.get(dxgi, f"DXGI_{dxgi}")
        elif fourcc in FOURCC_FORMATS:
            pixel_format = FOURCC_FORMATS[fourcc]
        else:
            raise DecodeError(f"{label}: unsupported FourCC {fourcc!r}")
        has_alpha = pixel_format in _ALPHA_FORMATS or bool(pf_flags & DDPF_ALPHAPIXELS)
    else:
        try:
            pixel_format = _uncompressed_format(pf_flags, bit_count, (r_mask, g_mask, b_mask, a_mask))
        except ValueError as exc:
            raise DecodeError(f"{label}: {exc}") from exc
        has_alpha = bool(pf_flags & (DDPF_ALPHAPIXELS | DDPF_ALPHA)) and a_mask != 0

    return TextureHeader(
        width=width,
        height=height,
        pixel_format=pixel_format,
        mip_count=max(mip_count, 1),
        has_alpha=has_alpha,
    )


def is_texture_path(logical_path: str, config: Optional[ClassifyConfig] = None) -> bool:
    """True when the path has a texture extension and is not skipped."""
    config = config or ClassifyConfig()
    path = logical_path.lower()
    if PurePosixPath(path).suffix not in {e.lower() for e in config.texture_extensions}:
        return False
    return not any(path.startswith(p.lower()) for p in config.skip_prefixes)


def classify(entry: VirtualFileEntry, reader,
             config: Optional[ClassifyConfig] = None) -> Optional[TextureAsset]:
    """Classify one VFS entry.

    ``reader`` provides ``read_head(entry, size)`` (normally the
    `VirtualFileSystem`). Returns None for non-textures.

    Raises:
        DecodeError: the entry looks like a texture but its header is bad.
    """
    config = config or ClassifyConfig()
    if not is_texture_path(entry.logical_path, config):
        return None
    tex_type = classify_path(entry.logical_path)
    head = reader.read_head(entry, HEAD_BYTES)
    header = decode_dds_header(head, entry.logical_path, config.max_dimension)
    if header is None:
        logger.debug("Not a DDS texture, skipping: %s", entry.logical_path)
        return None
    return TextureAsset(
        logical_path=entry.logical_path,
        texture_type=tex_type,
        header=header,
        source=entry,
    )
