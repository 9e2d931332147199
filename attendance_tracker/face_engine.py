import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .config import DEVICE, FACE_DETECTION_THRESHOLD, MIN_FACE_SIZE
from .exceptions import FaceEngineError

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


Box = Tuple[int, int, int, int]


@dataclass
class Detection:
    """One face found in a frame: pixel box as (x, y, w, h) and its embedding."""

    box: Box
    embedding: np.ndarray
    confidence: float = 1.0

    @property
    def area(self) -> int:
        return max(0, self.box[2]) * max(0, self.box[3])


class FaceEngine:
    """Recognizer adapter around MediaPipe face detection and a ResNet-18 embedder.

    Both models are used as-is; the rest of the package only relies on the
    Euclidean distance between two embeddings being meaningful. The MediaPipe
    graph and the CLAHE object are not thread-safe, so calls to
    :meth:`detect_all` are serialised.
    """

    def __init__(
        self,
        device: str = DEVICE,
        detection_threshold: float = FACE_DETECTION_THRESHOLD,
        min_face_size: int = MIN_FACE_SIZE,
    ):
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the project dependencies first.")

        self.device = torch.device(device)
        self.detection_threshold = detection_threshold
        self.min_face_size = min_face_size
        self._lock = threading.Lock()

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True

        try:
            self.mp_face = mp.solutions.face_detection
            self.detector = self.mp_face.FaceDetection(
                model_selection=0,
                min_detection_confidence=detection_threshold,
            )

            weights = ResNet18_Weights.DEFAULT
            backbone = models.resnet18(weights=weights)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
            self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        except Exception as exc:
            raise FaceEngineError(f"Failed to initialize face models: {exc}") from exc

    def detect_all(self, frame: np.ndarray) -> List[Detection]:
        with self._lock:
            return self._detect_all(frame)

    def _detect_all(self, frame: np.ndarray) -> List[Detection]:
        try:
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            result = self.detector.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.detections:
            return []

        h, w = frame.shape[:2]
        crops: List[np.ndarray] = []
        boxes: List[Box] = []
        confs: List[float] = []

        for det in result.detections:
            score = float(det.score[0]) if det.score else 0.0
            if score < self.detection_threshold:
                continue

            rel = det.location_data.relative_bounding_box
            x1 = max(0, int(rel.xmin * w))
            y1 = max(0, int(rel.ymin * h))
            x2 = min(w, x1 + int(rel.width * w))
            y2 = min(h, y1 + int(rel.height * h))

            if (x2 - x1) < self.min_face_size or (y2 - y1) < self.min_face_size:
                continue

            crop = self._extract_square_crop(rgb, x1, y1, x2, y2)
            if crop.size == 0:
                continue

            crops.append(crop)
            boxes.append((x1, y1, x2 - x1, y2 - y1))
            confs.append(score)

        if not crops:
            return []

        embeddings = self._embed_crops(crops)
        return [
            Detection(box=box, embedding=embeddings[i], confidence=confs[i])
            for i, box in enumerate(boxes)
        ]

    def embed_reference(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Embed the most confident face of a reference image, or None if there is none."""
        detections = self.detect_all(image)
        if not detections:
            return None
        best = max(detections, key=lambda det: det.confidence)
        return best.embedding

    def _embed_crops(self, crops: List[np.ndarray]) -> List[np.ndarray]:
        try:
            tensor_batch = self._to_tensor_batch(crops)
            with torch.inference_mode():
                if self.device.type == "cuda":
                    with torch.autocast(device_type="cuda", dtype=torch.float16):
                        raw = self.embedder(tensor_batch)
                else:
                    raw = self.embedder(tensor_batch)

                normed = f.normalize(raw.float(), p=2, dim=1)
                emb = normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Embedding generation failed: {exc}") from exc

        return [emb[i] for i in range(emb.shape[0])]

    def _to_tensor_batch(self, face_crops: List[np.ndarray]) -> torch.Tensor:
        processed = []
        for crop in face_crops:
            tensor = torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
            processed.append(tensor)

        batch = torch.stack(processed, dim=0).to(self.device)
        return (batch - self.mean) / self.std

    @staticmethod
    def _extract_square_crop(rgb: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> np.ndarray:
        h, w = rgb.shape[:2]
        side = int(max(max(1, x2 - x1), max(1, y2 - y1)) * 1.05)
        cx = int((x1 + x2) * 0.5)
        cy = int((y1 + y2) * 0.5)

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)

        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype)
        return rgb[sy1:sy2, sx1:sx2]

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        if crop.shape[0] < 224 or crop.shape[1] < 224:
            resized = cv2.resize(crop, (224, 224), interpolation=cv2.INTER_CUBIC)
        else:
            resized = cv2.resize(crop, (224, 224), interpolation=cv2.INTER_AREA)

        # Equalize luminance only; chroma is left untouched.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        y_channel = self.clahe.apply(y_channel)
        return cv2.cvtColor(cv2.merge([y_channel, cr_channel, cb_channel]), cv2.COLOR_YCrCb2RGB)
