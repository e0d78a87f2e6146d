"""Pluggable normal-map resolution for gloss/roughness textures.

Filename conventions are fuzzy, so every resolver treats "not found" as a
normal outcome and returns None instead of raising.
"""

import logging
import os
import re
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image

logger = logging.getLogger("texture_conversion.resolve")

_SPECULAR_TOKENS = ("_roughness", "_Roughness", "_ROUGHNESS",
                    "_gloss", "_Gloss", "_GLOSS")


class NormalMapResolver:
    """Base interface: map a texture path to its normal map, or None."""

    def resolve(self, texture_path: str) -> Optional[str]:
        raise NotImplementedError


class ExplicitNormalMapResolver(NormalMapResolver):
    """Return a fixed, user-supplied normal map when it exists."""

    def __init__(self, normal_map_path: str):
        self.normal_map_path = normal_map_path

    def resolve(self, texture_path: str) -> Optional[str]:
        if self.normal_map_path and os.path.isfile(self.normal_map_path):
            return self.normal_map_path
        if self.normal_map_path:
            logger.warning(
                "Configured normal map for %s does not exist: %s",
                texture_path, self.normal_map_path,
            )
        return None


class FilenameNormalMapResolver(NormalMapResolver):
    """Match `<name>_gloss.png` style textures to `<name>_normal.png` siblings.

    Candidates are looked up in the texture's own directory with the same
    extension.  With `validate_dimensions`, a candidate whose size differs
    from the texture's is rejected.
    """

    def __init__(self, validate_dimensions: bool = True):
        self.validate_dimensions = validate_dimensions

    @staticmethod
    def candidate_names(stem: str) -> List[str]:
        names = []
        for token in _SPECULAR_TOKENS:
            if token in stem:
                names.append(stem.replace(token, "_normal"))
                names.append(stem.replace(token, "_Normal"))
        names.append(f"{stem}_normal")
        names.append(f"{stem}_Normal")
        for short in ("_r", "_g", "_R", "_G"):
            if stem.endswith(short):
                names.append(stem[:-len(short)] + ("_N" if short.isupper() else "_n"))
        # Preserve order, drop duplicates.
        seen = set()
        return [n for n in names if not (n in seen or seen.add(n))]

    def resolve(self, texture_path: str) -> Optional[str]:
        path = Path(texture_path)
        for name in self.candidate_names(path.stem):
            candidate = path.with_name(name + path.suffix)
            if not candidate.is_file():
                continue
            if self.validate_dimensions and not _same_dimensions(path, candidate):
                logger.warning(
                    "Normal map %s found for %s but dimensions differ; ignoring.",
                    candidate, texture_path,
                )
                continue
            logger.info("Resolved normal map for %s: %s", texture_path, candidate)
            return str(candidate)
        logger.debug("No normal map found for %s", texture_path)
        return None


class ChainedNormalMapResolver(NormalMapResolver):
    """Try several resolvers in order; first hit wins."""

    def __init__(self, resolvers: Iterable[NormalMapResolver]):
        self.resolvers = list(resolvers)

    def resolve(self, texture_path: str) -> Optional[str]:
        for resolver in self.resolvers:
            found = resolver.resolve(texture_path)
            if found:
                return found
        return None


def default_normal_map_resolver(normal_map_path: str = "",
                                validate_dimensions: bool = True) -> NormalMapResolver:
    """Explicit path first (when given), then filename conventions."""
    resolvers: List[NormalMapResolver] = []
    if normal_map_path:
        resolvers.append(ExplicitNormalMapResolver(normal_map_path))
    resolvers.append(FilenameNormalMapResolver(validate_dimensions=validate_dimensions))
    return ChainedNormalMapResolver(resolvers)


def _same_dimensions(a: Path, b: Path) -> bool:
    try:
        with Image.open(a) as img_a, Image.open(b) as img_b:
            return img_a.size == img_b.size
    except OSError as exc:
        logger.warning("Could not read dimensions of %s / %s: %s", a, b, exc)
        return False


_TRAILING_SUFFIX = re.compile(
    r"_(gloss|glossiness|smoothness|roughness|albedo|diffuse|normal|metallic|ao|emissive)$",
    re.IGNORECASE,
)


def strip_texture_suffix(stem: str) -> str:
    """Drop one known texture-type suffix (``brick_gloss`` -> ``brick``)."""
    return _TRAILING_SUFFIX.sub("", stem, count=1)
