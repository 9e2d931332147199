from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import quote

import cv2
import numpy as np
import requests

from .config import LABELED_IMAGES_DIR, MAX_REFERENCE_IMAGES, REQUEST_TIMEOUT_SECONDS, ROSTER_URL
from .exceptions import AttendanceError, RosterError
from .face_engine import FaceEngine
from .logger import setup_logger


@dataclass
class RosterEntry:
    name: str
    embeddings: List[np.ndarray] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise RosterError("Roster entry name cannot be empty.")
        if len(self.embeddings) > MAX_REFERENCE_IMAGES:
            raise RosterError(
                f"Roster entry '{self.name}' has {len(self.embeddings)} references; "
                f"at most {MAX_REFERENCE_IMAGES} are kept."
            )


@dataclass
class Roster:
    """Known names plus the reference embeddings that could be built for them.

    ``names`` keeps every enrolled name in roster order, including names whose
    reference images yielded no face; those count for absentees but never match.
    """

    names: List[str] = field(default_factory=list)
    entries: List[RosterEntry] = field(default_factory=list)
    _matrix: Optional[np.ndarray] = field(default=None, init=False, repr=False, compare=False)
    _labels: List[str] = field(default_factory=list, init=False, repr=False, compare=False)

    @classmethod
    def from_entries(cls, entries: List[RosterEntry]) -> "Roster":
        return cls(names=[entry.name for entry in entries], entries=list(entries))

    @property
    def is_empty(self) -> bool:
        return not any(entry.embeddings for entry in self.entries)

    def reference_matrix(self) -> Tuple[np.ndarray, List[str]]:
        if self._matrix is None:
            vectors: List[np.ndarray] = []
            labels: List[str] = []
            for entry in self.entries:
                for embedding in entry.embeddings:
                    vectors.append(np.asarray(embedding, dtype=np.float32).reshape(-1))
                    labels.append(entry.name)
            if vectors:
                self._matrix = np.vstack(vectors).astype(np.float32)
            else:
                self._matrix = np.empty((0, 0), dtype=np.float32)
            self._labels = labels
        return self._matrix, self._labels


def validate_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise RosterError("Name is required.")
    if cleaned in {".", ".."} or "/" in cleaned or "\\" in cleaned:
        raise RosterError(f"Invalid name '{cleaned}'.")
    return cleaned


class RosterStore:
    """Reference images on disk, laid out as ``<root>/<name>/<n>.jpg``."""

    def __init__(self, root: Path = LABELED_IMAGES_DIR, max_images: int = MAX_REFERENCE_IMAGES):
        self.root = Path(root)
        self.max_images = max(1, int(max_images))
        self.logger = setup_logger(self.__class__.__name__)

    def known_names(self) -> List[str]:
        if not self.root.exists():
            return []
        try:
            return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())
        except OSError as exc:
            raise RosterError(f"Failed to list known names: {exc}") from exc

    def reference_path(self, name: str, index: int) -> Path:
        return self.root / validate_name(name) / f"{int(index)}.jpg"

    def reference_images(self, name: str) -> List[bytes]:
        images: List[bytes] = []
        for index in range(1, self.max_images + 1):
            path = self.reference_path(name, index)
            if not path.is_file():
                continue
            try:
                images.append(path.read_bytes())
            except OSError as exc:
                self.logger.warning("Could not read %s: %s", path, exc)
        return images

    def register(self, name: str, image: bytes) -> Path:
        name = validate_name(name)
        if not image:
            raise RosterError("No image uploaded.")

        person_dir = self.root / name
        try:
            person_dir.mkdir(parents=True, exist_ok=True)
            existing = [item for item in person_dir.iterdir() if item.suffix == ".jpg"]
            # Slots fill up to the cap, after which the last slot is overwritten.
            next_index = len(existing) + 1 if len(existing) < self.max_images else self.max_images
            path = person_dir / f"{next_index}.jpg"
            path.write_bytes(image)
        except OSError as exc:
            raise RosterError(f"Failed to save reference image for {name}: {exc}") from exc

        self.logger.info("Image saved to %s", path)
        return path


class RosterClient:
    """Consumes a remote roster server over HTTP."""

    def __init__(
        self,
        base_url: str,
        max_images: int = MAX_REFERENCE_IMAGES,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_images = max(1, int(max_images))
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = setup_logger(self.__class__.__name__)

    def known_names(self) -> List[str]:
        try:
            resp = self.session.get(f"{self.base_url}/known-names", timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise RosterError(f"Failed to fetch known names: {exc}") from exc

        if not isinstance(body, list):
            raise RosterError("Roster server returned an unexpected known-names payload.")
        return [str(item) for item in body]

    def reference_images(self, name: str) -> List[bytes]:
        images: List[bytes] = []
        for index in range(1, self.max_images + 1):
            url = f"{self.base_url}/labeled_images/{quote(name, safe='')}/{index}.jpg"
            try:
                resp = self.session.get(url, timeout=self.timeout)
                if resp.status_code == 404:
                    continue
                resp.raise_for_status()
            except requests.RequestException as exc:
                self.logger.warning("Could not load %s/%s.jpg: %s", name, index, exc)
                continue
            images.append(resp.content)
        return images

    def register(self, name: str, image: bytes) -> None:
        try:
            resp = self.session.post(
                f"{self.base_url}/register",
                data={"name": name},
                files={"image": ("face.jpg", image, "image/jpeg")},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise RosterError(f"Failed to register face for {name}: {exc}") from exc


def create_roster_source(roster_url: str = ROSTER_URL, store: Optional[RosterStore] = None):
    """Remote roster server when ``roster_url`` is set, otherwise the local image folder."""
    if roster_url:
        return RosterClient(roster_url)
    return store or RosterStore(LABELED_IMAGES_DIR)


def load_roster(source, engine: FaceEngine) -> Roster:
    """Build a roster by embedding every reference image the source holds.

    ``source`` is a :class:`RosterStore` or :class:`RosterClient`. Unreadable
    images are skipped; a name with no usable reference stays in ``names`` but
    gets no entry.
    """
    logger = setup_logger("RosterLoader")
    names = source.known_names()
    entries: List[RosterEntry] = []

    for name in names:
        embeddings: List[np.ndarray] = []
        for index, payload in enumerate(source.reference_images(name), start=1):
            image = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
            if image is None:
                logger.warning("Could not decode %s/%s.jpg", name, index)
                continue
            try:
                embedding = engine.embed_reference(image)
            except AttendanceError as exc:
                logger.warning("Could not embed %s/%s.jpg: %s", name, index, exc)
                continue
            if embedding is not None:
                embeddings.append(np.asarray(embedding, dtype=np.float32))

        if not embeddings:
            logger.warning("Skipping '%s': no valid descriptors.", name)
            continue
        entries.append(RosterEntry(name=name, embeddings=embeddings[:MAX_REFERENCE_IMAGES]))

    logger.info("Loaded descriptors for: %s", ", ".join(entry.name for entry in entries) or "nobody")
    return Roster(names=names, entries=entries)
