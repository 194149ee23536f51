"""In-memory Kubernetes manifest documents.

A ManifestDocument keeps the original manifest text together with its
composed YAML node tree. Container image fields are located structurally
(any ``containers`` or ``initContainers`` list, at any depth, in any
document of the stream) and rewritten by replacing only the characters of
the image scalar, so every other byte of the file survives a patch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from shipline.errors import PatchError
from shipline.types import ImageReference

logger = logging.getLogger(__name__)

CONTAINER_LIST_KEYS = ("containers", "initContainers")


@dataclass(frozen=True)
class ImageField:
    """Location of one container image scalar.

    Attributes:
        path: Structural path, e.g. ``[0].spec.template.spec.containers[0].image``.
        container: Container name, if the container declares one.
        value: Current image string.
        start: Character offset where the scalar starts (quotes included).
        end: Character offset where the scalar ends (quotes included).
        style: Scalar style: None for plain, ``'`` or ``"`` for quoted.
    """

    path: str
    container: str | None
    value: str
    start: int
    end: int
    style: str | None


def _mapping_get(node: yaml.MappingNode, key: str) -> yaml.Node | None:
    for key_node, value_node in node.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
            return value_node
    return None


def _scalar_start(text: str, start: int, end: int) -> int:
    """Skip the anchor and tag properties a node's start mark includes."""
    pos = start
    while pos < end and text[pos] in "&!":
        if text.startswith("!<", pos):
            pos = text.index(">", pos) + 1
        else:
            while pos < end and not text[pos].isspace():
                pos += 1
        while pos < end and text[pos].isspace():
            pos += 1
    return pos


def _collect_image_fields(
    node: yaml.Node, path: str, text: str, found: list[ImageField]
) -> None:
    if isinstance(node, yaml.MappingNode):
        for key_node, value_node in node.value:
            key = key_node.value if isinstance(key_node, yaml.ScalarNode) else "?"
            child_path = f"{path}.{key}"
            if key in CONTAINER_LIST_KEYS and isinstance(value_node, yaml.SequenceNode):
                for index, item in enumerate(value_node.value):
                    if not isinstance(item, yaml.MappingNode):
                        continue
                    image = _mapping_get(item, "image")
                    if not isinstance(image, yaml.ScalarNode):
                        continue
                    name = _mapping_get(item, "name")
                    found.append(
                        ImageField(
                            path=f"{child_path}[{index}].image",
                            container=name.value
                            if isinstance(name, yaml.ScalarNode)
                            else None,
                            value=image.value,
                            start=_scalar_start(
                                text, image.start_mark.index, image.end_mark.index
                            ),
                            end=image.end_mark.index,
                            style=image.style,
                        )
                    )
            _collect_image_fields(value_node, child_path, text, found)
    elif isinstance(node, yaml.SequenceNode):
        for index, item in enumerate(node.value):
            _collect_image_fields(item, f"{path}[{index}]", text, found)


class ManifestDocument:
    """A deployment descriptor that round-trips byte for byte.

    Attributes:
        source_path: File the document was loaded from, if any.
        applied_image: Last image reference patched into this document.
    """

    def __init__(self, text: str, source_path: Path | None = None) -> None:
        self.source_path = source_path
        self.applied_image: ImageReference | None = None
        self._set_text(text)

    def _set_text(self, text: str) -> None:
        try:
            roots = [
                node
                for node in yaml.compose_all(text, Loader=yaml.SafeLoader)
                if node is not None
            ]
        except yaml.YAMLError as e:
            raise PatchError(
                "Manifest is not valid YAML",
                response=str(e),
                code="invalid_manifest",
            ) from e
        self._text = text
        self._roots = roots

    @classmethod
    def parse(cls, text: str, source_path: Path | None = None) -> ManifestDocument:
        """Parse manifest text.

        Raises:
            PatchError: If the text is not valid YAML.
        """
        return cls(text, source_path=source_path)

    @classmethod
    def load(cls, path: Path) -> ManifestDocument:
        """Load a manifest file.

        Raises:
            PatchError: If the file is missing or not valid YAML.
        """
        try:
            with open(path, encoding="utf-8", newline="") as f:
                text = f.read()
        except FileNotFoundError as e:
            raise PatchError(
                f"Manifest file not found: {path}",
                code="manifest_missing",
            ) from e
        return cls(text, source_path=path)

    def reload(self) -> None:
        """Re-read the document from its source file."""
        if self.source_path is None:
            raise ValueError("Document was not loaded from a file")
        with open(self.source_path, encoding="utf-8", newline="") as f:
            self._set_text(f.read())

    def serialize(self) -> str:
        """Return the manifest text."""
        return self._text

    def save(self, path: Path | None = None) -> Path:
        """Write the manifest text back to disk."""
        target = path or self.source_path
        if target is None:
            raise ValueError("No path to save manifest to")
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(self._text)
        return target

    def data(self) -> list[Any]:
        """Return the documents as plain Python objects."""
        return [d for d in yaml.safe_load_all(self._text) if d is not None]

    def image_fields(self) -> list[ImageField]:
        """Locate every container image field."""
        found: list[ImageField] = []
        for index, root in enumerate(self._roots):
            _collect_image_fields(root, f"[{index}]", self._text, found)
        return found

    @property
    def images(self) -> list[str]:
        """Current container image strings, in document order."""
        return [f.value for f in self.image_fields()]

    @property
    def replicas(self) -> list[int | None]:
        """Replica count of each document (None where unset)."""
        counts: list[int | None] = []
        for doc in self.data():
            spec = doc.get("spec") if isinstance(doc, dict) else None
            value = spec.get("replicas") if isinstance(spec, dict) else None
            counts.append(value if isinstance(value, int) else None)
        return counts

    @property
    def container_ports(self) -> list[int]:
        """Every declared ``containerPort``, in document order."""
        ports: list[int] = []

        def walk(obj: Any) -> None:
            if isinstance(obj, dict):
                for key, value in obj.items():
                    if key == "ports" and isinstance(value, list):
                        ports.extend(
                            p["containerPort"]
                            for p in value
                            if isinstance(p, dict) and "containerPort" in p
                        )
                    walk(value)
            elif isinstance(obj, list):
                for item in obj:
                    walk(item)

        walk(self.data())
        return ports

    def replace_images(self, fields: list[ImageField], image: str) -> None:
        """Rewrite the given image fields in place.

        Only the characters of each scalar change; the quoting style of
        each scalar is kept. Fields sharing one node through a YAML alias
        are written once, at the anchored scalar.

        Raises:
            PatchError: For block scalars, or if the result does not re-parse
                to the expected images.
        """
        text = self._text
        spans = {(f.start, f.end): f for f in fields}
        for field in sorted(spans.values(), key=lambda f: f.start, reverse=True):
            if field.style in ("'", '"'):
                replacement = f"{field.style}{image}{field.style}"
            elif field.style is None:
                replacement = image
            else:
                raise PatchError(
                    f"Unsupported scalar style for image at {field.path}",
                    code="unsupported_scalar",
                )
            text = text[: field.start] + replacement + text[field.end :]

        paths = {f.path for f in fields}
        original = self._text
        self._set_text(text)
        patched = [f for f in self.image_fields() if f.path in paths]
        if len(patched) != len(paths) or any(f.value != image for f in patched):
            self._set_text(original)
            raise PatchError(
                "Patched manifest does not contain the expected image",
                code="patch_verification_failed",
            )
        logger.debug("Rewrote %d image scalar(s) to %s", len(spans), image)


__all__ = ["CONTAINER_LIST_KEYS", "ImageField", "ManifestDocument"]
