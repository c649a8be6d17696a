"""
Pretrained CNN Art Embedding
MobileNetV2 global-average-pooled features, cut to the embedding dimension and
L2-normalized. An alternative to the handcrafted features; catalogs must be
built with the same backend that scans against them.
"""
import logging
from typing import Callable, Optional

import cv2
import numpy as np

from config import settings
from engine_handle import EngineHandle
from exceptions import ModelLoadError

# torch/torchvision ship with the "cnn" extra
try:
    import torch
    import torch.nn.functional as F
    from torchvision import models
    TORCH_AVAILABLE = True
except ImportError:
    TORCH_AVAILABLE = False
    logging.debug("torch/torchvision not available")

logger = logging.getLogger(__name__)

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class MobileNetFeatureModel:
    """MobileNetV2 backbone (ImageNet weights) returning pooled features for one RGB image"""

    def __init__(self, device: str = None):
        if not TORCH_AVAILABLE:
            raise ModelLoadError("torch and torchvision are required for the mobilenet backend")

        self.device = device or settings.CNN_DEVICE
        network = models.mobilenet_v2(weights=models.MobileNet_V2_Weights.DEFAULT)
        self.backbone = network.features.to(self.device).eval()

    def __call__(self, rgb: np.ndarray) -> np.ndarray:
        x = (rgb.astype(np.float32) / 255.0 - IMAGENET_MEAN) / IMAGENET_STD
        batch = torch.from_numpy(np.ascontiguousarray(x.transpose(2, 0, 1))).unsqueeze(0).to(self.device)

        with torch.no_grad():
            features = self.backbone(batch)
            pooled = F.adaptive_avg_pool2d(features, 1).flatten(1)

        return pooled[0].cpu().numpy()


# One model per process, built on first use
_shared_handle = EngineHandle(lambda: MobileNetFeatureModel(), name="MobileNet model")

def shared_model_handle() -> EngineHandle:
    return _shared_handle


class MobileNetEmbedder:
    """Embeds art crops with the CNN behind a load-once handle"""

    def __init__(self, handle: Optional[EngineHandle] = None, dimension: int = None,
                 input_size: int = None):
        self.handle = handle or shared_model_handle()
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.input_size = input_size or settings.EMBEDDING_INPUT_SIZE

    @classmethod
    def from_factory(cls, factory: Callable[[], Callable[[np.ndarray], np.ndarray]], **kwargs) -> "MobileNetEmbedder":
        """Embedder with its own model handle instead of the shared one"""
        return cls(handle=EngineHandle(factory, name="CNN model"), **kwargs)

    @property
    def available(self) -> bool:
        return self.handle.get() is not None

    def embed(self, art: np.ndarray) -> np.ndarray:
        """L2-normalized embedding of an RGB or RGBA art crop"""
        model = self.handle.get()
        if model is None:
            raise ModelLoadError(f"CNN embedding model unavailable: {self.handle.error}")

        if art.ndim != 3 or art.shape[2] not in (3, 4):
            raise ValueError(f"Expected an RGB or RGBA image, got shape {art.shape}")
        rgb = np.ascontiguousarray(art[:, :, :3])
        if rgb.shape[:2] != (self.input_size, self.input_size):
            rgb = cv2.resize(rgb, (self.input_size, self.input_size), interpolation=cv2.INTER_AREA)

        features = np.asarray(model(rgb), dtype=np.float64).ravel()

        # Leading pooled channels, zero-padded if the model returns fewer
        vector = np.zeros(self.dimension, dtype=np.float64)
        count = min(features.size, self.dimension)
        vector[:count] = features[:count]

        norm = float(np.sqrt(np.sum(vector * vector)))
        if norm > 0.0:
            vector = vector / norm
        return vector.astype(np.float32)
