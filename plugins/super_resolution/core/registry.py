"""Static catalog of the selectable upscaling models."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Sequence

from .errors import UnknownModelError


class ScaleFactor(IntEnum):
    X2 = 2
    X4 = 4

    @property
    def label(self) -> str:
        return f"{int(self)}x"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    description: str
    scale: ScaleFactor
    family: str = "swin2sr"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "scale": self.scale.label,
            "scale_factor": int(self.scale),
        }


class ModelRegistry:
    """Ordered, immutable collection of :class:`ModelDescriptor` entries."""

    def __init__(self, descriptors: Sequence[ModelDescriptor]):
        self._descriptors = tuple(descriptors)
        self._by_id = {descriptor.id: descriptor for descriptor in self._descriptors}
        if len(self._by_id) != len(self._descriptors):
            raise ValueError("Model identifiers must be unique")

    def list(self) -> tuple[ModelDescriptor, ...]:
        return self._descriptors

    def find(self, model_id: str) -> ModelDescriptor:
        try:
            return self._by_id[model_id]
        except KeyError:
            raise UnknownModelError(model_id) from None

    def contains(self, descriptor: ModelDescriptor) -> bool:
        return self._by_id.get(descriptor.id) == descriptor

    @property
    def default(self) -> ModelDescriptor:
        return self._descriptors[0]

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)


REGISTRY = ModelRegistry(
    [
        ModelDescriptor(
            id="caidas/swin2SR-classical-sr-x2-64",
            name="Super-Resolution 2x",
            description="Double image resolution (classical images)",
            scale=ScaleFactor.X2,
        ),
        ModelDescriptor(
            id="caidas/swin2SR-classical-sr-x4-64",
            name="Super-Resolution 4x",
            description="Quadruple image resolution (classical images)",
            scale=ScaleFactor.X4,
        ),
        ModelDescriptor(
            id="caidas/swin2SR-realworld-sr-x4-64-bsrgan-psnr",
            name="Real-World 4x Upscale",
            description="Enhance real-world photos (4x)",
            scale=ScaleFactor.X4,
        ),
        ModelDescriptor(
            id="caidas/swin2SR-compressed-sr-x4-48",
            name="Compressed Image Enhancer",
            description="Restore compressed/JPEG images (4x)",
            scale=ScaleFactor.X4,
        ),
        ModelDescriptor(
            id="RealESRGAN_x4plus_anime_6B",
            name="Anime/Image Upscaler",
            description="GAN-based 4x upscaling for anime/illustrations",
            scale=ScaleFactor.X4,
            family="realesrgan",
        ),
    ]
)


def list_models() -> tuple[ModelDescriptor, ...]:
    return REGISTRY.list()


def find_model(model_id: str) -> ModelDescriptor:
    return REGISTRY.find(model_id)


__all__ = [
    "ScaleFactor",
    "ModelDescriptor",
    "ModelRegistry",
    "REGISTRY",
    "list_models",
    "find_model",
]
