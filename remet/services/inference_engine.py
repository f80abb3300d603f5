import asyncio
import os
import time
from concurrent.futures import Executor
from typing import Optional

import numpy as np
import onnxruntime as ort

from remet.core.config import settings
from remet.core.exceptions import DetectionFailed, EmbeddingFailed
from remet.core.logging import get_logger
from remet.schemas.scan_schema import BoundingBox, DetectedFace
from remet.services.face_math import l2_normalize
from remet.services.interfaces import CancellationToken
from remet.utils.image_processing import (
    convert_and_resize,
    crop_face,
    prepare_tensor_for_onnx,
)


logger = get_logger(__name__)

DETECTION_INPUT_SIZE = (640, 640)
RECOGNITION_INPUT_SIZE = (112, 112)
DETECTION_STRIDES = (8, 16, 32)
NMS_IOU_THRESHOLD = 0.4


class InferenceEngine:
    """
    Manages the ONNX sessions of the reference face detector (SCRFD) and
    encoder (ArcFace MobileFaceNet).

    This is one possible implementation of the detector / encoder boundary;
    hosts with their own on-device models plug those in instead.
    """
    def __init__(
        self,
        models_path: str = settings.MODELS_PATH,
        score_threshold: float = settings.DETECTION_SCORE_THRESHOLD,
        crop_padding: float = settings.FACE_CROP_PADDING,
    ):
        self.sessions = {}
        self.score_threshold = score_threshold
        self.crop_padding = crop_padding
        self.model_paths = {
            "detection": os.path.join(models_path, "detection/det_500m.onnx"),
            "recognition": os.path.join(models_path, "recognition/w600k_mbf.onnx"),
        }

    def load_models(self):
        """
        Initializes ONNX Runtime sessions for both models on the CPU provider.
        """
        providers = ['CPUExecutionProvider']

        try:
            for name, path in self.model_paths.items():
                if not os.path.exists(path):
                    raise FileNotFoundError(f"Model file not found at {path}")

                self.sessions[name] = ort.InferenceSession(path, providers=providers)
                logger.info(f"Model '{name}' loaded successfully. Providers: {providers}")

        except Exception as e:
            logger.error(f"Error loading ONNX models: {e}", exc_info=True)
            raise

    def get_session(self, model_name: str):
        """
        Returns the specific inference session.
        """
        return self.sessions.get(model_name)

    def clear_models(self):
        """
        Releases the sessions when the host shuts down.
        """
        self.sessions.clear()

    def detect_faces(self, image: np.ndarray) -> list[DetectedFace]:
        """
        Executes the SCRFD model and crops every detected face.

        Args:
            image (np.ndarray): The raw BGR frame or photo.

        Returns:
            list[DetectedFace]: Faces sorted by detector score, each with a
            normalized top-left-origin box and a padded BGR crop.

        Raises:
            RuntimeError: If the detection session is not loaded.
            DetectionFailed: If the image is unusable or inference fails.
        """
        session = self.get_session("detection")

        if not session:
            raise RuntimeError("Detection model session is not initialized.")

        if image is None or getattr(image, "ndim", 0) != 3 or image.size == 0:
            raise DetectionFailed("Could not process the image")

        original_height, original_width = image.shape[:2]

        # InsightFace SCRFD normalization: (pixel_value - 127.5) / 128.0
        resized_image = convert_and_resize(image, DETECTION_INPUT_SIZE, to_rgb=True)
        image_normalized = (resized_image.astype(np.float32) - 127.5) / 128.0
        input_tensor = np.expand_dims(np.transpose(image_normalized, (2, 0, 1)), axis=0)

        try:
            input_name = session.get_inputs()[0].name
            raw_outputs = session.run(None, {input_name: input_tensor})
        except Exception as e:
            raise DetectionFailed(f"Face detection failed: {e}") from e

        raw_faces = self._decode_scrfd_outputs(raw_outputs, DETECTION_INPUT_SIZE)
        kept = self._apply_nms(raw_faces, NMS_IOU_THRESHOLD)

        faces = []
        for raw in kept:
            box = self._normalize_box(raw["bbox"], DETECTION_INPUT_SIZE)
            crop = crop_face(image, box, padding=self.crop_padding)

            # Degenerate boxes produce no crop and are dropped
            if crop is None:
                continue

            faces.append(DetectedFace(bounding_box=box, face_crop=crop, score=raw["score"]))

        logger.debug(
            f"Detected {len(faces)} face(s) in a {original_width}x{original_height} image"
        )
        return faces

    def _decode_scrfd_outputs(self, raw_outputs: list, input_size: tuple) -> list:
        # Tensor order of the model:
        # [0:3] -> Scores (12800, 3200, 800)
        # [3:6] -> BBoxes (12800x4, 3200x4, 800x4)
        # [6:9] -> KPS / Landmarks, unused here
        scores_list = raw_outputs[0:3]
        bboxes_list = raw_outputs[3:6]

        total_faces = []

        for i, stride in enumerate(DETECTION_STRIDES):
            scores = np.asarray(scores_list[i]).reshape(-1)
            bboxes = np.asarray(bboxes_list[i]).reshape((-1, 4)) * stride

            height = input_size[1] // stride
            width = input_size[0] // stride

            # Anchors per grid cell (12800 / 6400 = 2)
            num_anchors = scores.shape[0] // (height * width)

            X, Y = np.meshgrid(np.arange(width), np.arange(height))
            anchor_grid = (np.stack([X, Y], axis=-1) * stride).reshape((-1, 2))
            anchor_grid = np.repeat(anchor_grid, num_anchors, axis=0)

            for idx in np.where(scores > self.score_threshold)[0]:
                anchor = anchor_grid[idx]
                reg = bboxes[idx]

                total_faces.append({
                    "bbox": [
                        float(anchor[0] - reg[0]),
                        float(anchor[1] - reg[1]),
                        float(anchor[0] + reg[2]),
                        float(anchor[1] + reg[3]),
                    ],
                    "score": float(scores[idx]),
                })

        return total_faces

    def _apply_nms(self, faces: list, iou_threshold: float) -> list:

        if not faces:
            return []

        faces = sorted(faces, key=lambda f: f["score"], reverse=True)
        keep = []

        while faces:
            best_face = faces.pop(0)
            keep.append(best_face)
            faces = [f for f in faces if self._compute_iou(best_face["bbox"], f["bbox"]) < iou_threshold]

        return keep

    def _compute_iou(self, boxA, boxB) -> float:

        xA = max(boxA[0], boxB[0]); yA = max(boxA[1], boxB[1])
        xB = min(boxA[2], boxB[2]); yB = min(boxA[3], boxB[3])
        interArea = max(0, xB - xA) * max(0, yB - yA)
        boxAArea = (boxA[2] - boxA[0]) * (boxA[3] - boxA[1])
        boxBArea = (boxB[2] - boxB[0]) * (boxB[3] - boxB[1])

        union = boxAArea + boxBArea - interArea
        if union <= 0:
            return 0.0

        return interArea / float(union)

    @staticmethod
    def _normalize_box(bbox: list, input_size: tuple) -> BoundingBox:
        # Detector coordinates are in the resized input space; dividing by
        # that size gives the same unit-square box for the original image.
        width, height = input_size
        x1 = min(1.0, max(0.0, bbox[0] / width))
        y1 = min(1.0, max(0.0, bbox[1] / height))
        x2 = min(1.0, max(0.0, bbox[2] / width))
        y2 = min(1.0, max(0.0, bbox[3] / height))
        return BoundingBox(x1, y1, max(0.0, x2 - x1), max(0.0, y2 - y1))

    def get_face_embedding(self, face_crop: np.ndarray) -> np.ndarray:
        """
        Extracts the 512-dimensional embedding of a face crop using ArcFace.

        Args:
            face_crop (np.ndarray): BGR face crop of any size.

        Returns:
            np.ndarray: A 1D array of shape (512,), L2-normalized.

        Raises:
            RuntimeError: If the recognition session is not loaded.
            EmbeddingFailed: If the crop is empty or inference fails.
        """
        start = time.time()

        session = self.get_session("recognition")

        if not session:
            raise RuntimeError("Recognition model session is not initialized.")

        if face_crop is None or getattr(face_crop, "size", 0) == 0:
            raise EmbeddingFailed("Face crop is empty")

        # ArcFace w600k_mbf requires exactly 112x112 RGB input
        aligned = convert_and_resize(face_crop, RECOGNITION_INPUT_SIZE, to_rgb=True)
        input_tensor = prepare_tensor_for_onnx(aligned, mean=0.5, std=0.5)

        try:
            input_name = session.get_inputs()[0].name
            raw_outputs = session.run(None, {input_name: input_tensor})
        except Exception as e:
            raise EmbeddingFailed(f"Embedding generation failed: {e}") from e

        # Output is a batch of one, shape (1, 512)
        embedding = np.asarray(raw_outputs[0], dtype=np.float32).flatten()

        if not np.all(np.isfinite(embedding)) or not np.any(embedding):
            raise EmbeddingFailed("Encoder returned a degenerate embedding")

        # Cosine comparisons assume vectors on the unit hypersphere
        embedding = l2_normalize(embedding)

        logger.debug(f"Embedding extracted in {time.time() - start:.4f}s")

        return embedding


class OnnxFaceBackend:
    """
    Async detector + encoder on top of an InferenceEngine.

    ONNX inference is CPU-bound, so both calls run in an executor and the
    event loop driving the scan stays responsive.
    """

    def __init__(self, engine: InferenceEngine, executor: Optional[Executor] = None):
        self.engine = engine
        self.executor = executor

    async def detect_faces(
        self, image: np.ndarray, token: Optional[CancellationToken] = None
    ) -> list[DetectedFace]:
        return await self._run(self.engine.detect_faces, image, token)

    async def generate_embedding(
        self, face_crop: np.ndarray, token: Optional[CancellationToken] = None
    ) -> np.ndarray:
        return await self._run(self.engine.get_face_embedding, face_crop, token)

    async def _run(self, fn, arg, token: Optional[CancellationToken]):
        # A session already running in the executor cannot be interrupted,
        # so a fired token only prevents starting new work.
        if token is not None and token.cancelled:
            raise asyncio.CancelledError()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, fn, arg)
