"""
Inference backends (ONNX Runtime, synthetic) and the factory that selects between them.

Every backend honours the same prediction contract per model type:
- object_detection: float32 rows of [confidence, x, y, width, height, class_id]
  in input-tensor pixel coordinates (x, y = top-left corner)
- face_recognition: float32 rows of [x, y, width, height, confidence, *embedding]
- anomaly_detection: float32 [[score, is_anomalous]]
- weapon_detection: float32 [[confidence, has_weapon]]

Synthetic backends are deterministic and flagged with ``kind == "synthetic"``
so their output is never mistaken for a real model's.
"""

from __future__ import annotations

import abc
import logging
from pathlib import Path
from typing import List

import numpy as np

from .config import ModelDescriptor, RegistryConfig
from .errors import ResourceNotFoundError

LOGGER = logging.getLogger(__name__)

REAL = "real"
SYNTHETIC = "synthetic"


class InferenceBackend(abc.ABC):
    """Abstract inference backend bound to a single model descriptor."""

    kind: str = REAL

    def __init__(self, descriptor: ModelDescriptor):
        self.descriptor = descriptor

    @property
    def is_synthetic(self) -> bool:
        return self.kind == SYNTHETIC

    @abc.abstractmethod
    def predict(self, inputs: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def dispose(self) -> None:
        """Release native resources held by the backend."""


class SyntheticBackend(InferenceBackend):
    """Stand-in used when no model artifact is available. Emits no findings."""

    kind = SYNTHETIC

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        model_type = self.descriptor.type
        if model_type == "object_detection":
            return np.zeros((0, 6), dtype=np.float32)
        if model_type == "face_recognition":
            dims = int(self.descriptor.output_dimensions or 128)
            return np.zeros((0, 5 + dims), dtype=np.float32)
        return np.zeros((1, 2), dtype=np.float32)


class OnnxBackend(InferenceBackend):
    """ONNX Runtime backend with CPU/CUDA execution providers."""

    kind = REAL

    def __init__(self, descriptor: ModelDescriptor, model_path: Path, device: str = "cpu", warmup: bool = False):
        super().__init__(descriptor)
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as exc:  # noqa: BLE001
            raise RuntimeError(
                "Real backend selected but 'onnxruntime' is not installed. "
                "Install with `pip install sentinel-vision[onnx]` or `pip install onnxruntime`."
            ) from exc

        providers: List[str] = []
        if device.startswith("cuda") and "CUDAExecutionProvider" in ort.get_available_providers():
            providers.append("CUDAExecutionProvider")
        elif device.startswith("cuda"):
            LOGGER.warning("CUDA requested but CUDAExecutionProvider not available, falling back to CPU")
        providers.append("CPUExecutionProvider")

        LOGGER.info("Loading ONNX model '%s' from %s with providers %s", descriptor.id, model_path, providers)
        session_options = ort.SessionOptions()
        session_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        self.session = ort.InferenceSession(str(model_path), sess_options=session_options, providers=providers)
        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name

        if warmup:
            LOGGER.debug("Running warmup for model '%s'", descriptor.id)
            height, width, channels = descriptor.input_shape
            self.predict(np.zeros((height, width, channels), dtype=np.uint8))

    def predict(self, inputs: np.ndarray) -> np.ndarray:
        tensor = self._to_tensor(inputs)
        raw = self.session.run([self.output_name], {self.input_name: tensor})[0]
        model_type = self.descriptor.type
        if model_type == "object_detection":
            return self._decode_boxes(raw)
        if model_type == "face_recognition":
            embedding = np.asarray(raw, dtype=np.float32).reshape(1, -1)
            height, width = inputs.shape[:2]
            header = np.array([[0.0, 0.0, float(width), float(height), 1.0]], dtype=np.float32)
            return np.concatenate([header, embedding], axis=1)
        return np.atleast_2d(np.asarray(raw, dtype=np.float32))

    def dispose(self) -> None:
        self.session = None

    @staticmethod
    def _to_tensor(inputs: np.ndarray) -> np.ndarray:
        if inputs.ndim == 3:
            image = inputs.astype(np.float32) * (1.0 / 255.0)
            return np.expand_dims(np.ascontiguousarray(np.transpose(image, (2, 0, 1))), axis=0)
        return np.ascontiguousarray(inputs.astype(np.float32))

    def _decode_boxes(self, predictions: np.ndarray) -> np.ndarray:
        """
        Decode YOLO style outputs into detection rows.

        YOLOv5 output: [batch, anchors, 85] = [cx, cy, w, h, obj, cls...]
        YOLOv8 output: [batch, 84, anchors] = [cx, cy, w, h, cls...]
        """
        empty = np.zeros((0, 6), dtype=np.float32)
        if predictions.ndim == 3:
            predictions = np.squeeze(predictions, axis=0)
        if predictions.ndim != 2:
            LOGGER.warning("Unexpected prediction shape: %s", predictions.shape)
            return empty
        if predictions.shape[0] != 0 and predictions.shape[0] < predictions.shape[1]:
            predictions = predictions.T
        if predictions.shape[1] < 5:
            LOGGER.warning("Unexpected prediction shape: %s", predictions.shape)
            return empty

        boxes = predictions[:, :4]
        classes = self.descriptor.output_classes or predictions.shape[1] - 4
        if predictions.shape[1] == classes + 5:
            scores = predictions[:, 5:] * predictions[:, 4:5]
        else:
            scores = predictions[:, 4:]

        class_indices = np.argmax(scores, axis=1)
        confidences = scores[np.arange(scores.shape[0]), class_indices]
        mask = confidences >= self.descriptor.confidence_threshold
        boxes, confidences, class_indices = boxes[mask], confidences[mask], class_indices[mask]
        if boxes.size == 0:
            return empty

        xyxy = _xywh2xyxy(boxes)
        keep = _nms(xyxy, confidences, self.descriptor.nms_threshold)
        rows = [
            [
                float(confidences[idx]),
                float(xyxy[idx, 0]),
                float(xyxy[idx, 1]),
                float(xyxy[idx, 2] - xyxy[idx, 0]),
                float(xyxy[idx, 3] - xyxy[idx, 1]),
                float(class_indices[idx]),
            ]
            for idx in keep
        ]
        return np.asarray(rows, dtype=np.float32)


class BackendFactory:
    """Selects and instantiates the backend variant for a model descriptor."""

    def __init__(self, config: RegistryConfig):
        self.config = config

    def artifact_path(self, descriptor: ModelDescriptor) -> Path:
        path = Path(descriptor.path)
        if not path.is_absolute():
            path = Path(self.config.models_dir) / path
        return path

    def resolve_kind(self, descriptor: ModelDescriptor) -> str:
        mode = self.config.backend_mode
        if mode == SYNTHETIC:
            return SYNTHETIC
        if mode == REAL:
            return REAL
        if descriptor.path and self.artifact_path(descriptor).is_file():
            return REAL
        LOGGER.warning(
            "Model files not found for '%s' (%s), using synthetic backend",
            descriptor.id,
            self.artifact_path(descriptor),
        )
        return SYNTHETIC

    def create(self, descriptor: ModelDescriptor) -> InferenceBackend:
        kind = self.resolve_kind(descriptor)
        if kind == SYNTHETIC:
            return SyntheticBackend(descriptor)
        path = self.artifact_path(descriptor)
        if not path.is_file():
            raise ResourceNotFoundError(f"Model artifact not found for '{descriptor.id}': {path}")
        return OnnxBackend(descriptor, path, device=self.config.device, warmup=self.config.warmup)


def _xywh2xyxy(boxes: np.ndarray) -> np.ndarray:
    result = boxes.copy()
    result[:, 0] = boxes[:, 0] - boxes[:, 2] / 2.0
    result[:, 1] = boxes[:, 1] - boxes[:, 3] / 2.0
    result[:, 2] = boxes[:, 0] + boxes[:, 2] / 2.0
    result[:, 3] = boxes[:, 1] + boxes[:, 3] / 2.0
    return result


def _nms(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float) -> List[int]:
    if not len(boxes):
        return []
    order = scores.argsort()[::-1]
    keep: List[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        if order.size == 1:
            break
        iou = _iou(boxes[i], boxes[order[1:]])
        remaining = np.where(iou <= iou_threshold)[0]
        order = order[remaining + 1]
    return keep


def _iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    if boxes.size == 0:
        return np.array([])
    x1 = np.maximum(box[0], boxes[:, 0])
    y1 = np.maximum(box[1], boxes[:, 1])
    x2 = np.minimum(box[2], boxes[:, 2])
    y2 = np.minimum(box[3], boxes[:, 3])

    inter_area = np.maximum(0, x2 - x1) * np.maximum(0, y2 - y1)
    box_area = (box[2] - box[0]) * (box[3] - box[1])
    boxes_area = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
    union = box_area + boxes_area - inter_area
    return inter_area / np.clip(union, a_min=1e-6, a_max=None)
