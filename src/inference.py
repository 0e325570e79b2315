"""
External Inference Service Clients

This module wraps the inference services the alignment engine depends on:
1. Image labeling (ViT image classification via Hugging Face transformers)
2. Text embedding (local transformers encoder, or the OpenAI embeddings API)

Each client exposes one small method so the cache layer and the tests can
swap them for fakes:
- ImageLabeler.label(image_bytes) -> List[LabelScore]
- TextEmbedder.embed(texts) -> List[List[float]]
"""

import io
import logging
import os
from typing import List, Optional, Sequence

import numpy as np

try:
    import torch
    from transformers import AutoModel, AutoTokenizer, pipeline
    from PIL import Image
except ImportError:
    torch = None
    AutoModel = None
    AutoTokenizer = None
    pipeline = None
    Image = None

try:
    from openai import OpenAI
except ImportError:
    OpenAI = None

from models import ExternalServiceError, LabelScore


logger = logging.getLogger(__name__)


def _resolve_device(device: str):
    if 'cuda' in device and torch.cuda.is_available():
        return torch.device(device)
    if 'cuda' in device:
        logger.warning("CUDA not available, falling back to CPU")
    return torch.device('cpu')


class ImageLabeler:
    """
    Image classification service returning ranked labels.

    Default model: google/vit-base-patch16-224 (ImageNet-1k labels)
    """

    def __init__(
        self,
        model_name: str = 'google/vit-base-patch16-224',
        device: str = 'cpu',
        top_k: int = 5
    ):
        if pipeline is None or Image is None:
            raise ImportError(
                "Transformers, PyTorch and Pillow not installed. "
                "Run: pip install transformers torch pillow"
            )

        self.model_name = model_name
        self.top_k = top_k
        self.device = _resolve_device(device)

        logger.info(f"Loading image classifier: {model_name}")
        self.classifier = pipeline('image-classification', model=model_name, device=self.device)
        logger.info(f"ImageLabeler initialized on {self.device}")

    def label(self, image: bytes) -> List[LabelScore]:
        """
        Classify one encoded image.

        Args:
            image: Encoded image bytes (JPEG/PNG)

        Returns:
            Labels sorted by descending score
        """
        try:
            pil_image = Image.open(io.BytesIO(image)).convert('RGB')
        except Exception as e:
            raise ExternalServiceError(f"Unreadable image for labeling: {e}") from e

        try:
            results = self.classifier(pil_image, top_k=self.top_k)
        except Exception as e:
            raise ExternalServiceError(f"Image classification failed: {e}") from e

        labels = [LabelScore(label=r['label'], score=float(r['score'])) for r in results]
        labels.sort(key=lambda l: l.score, reverse=True)
        return labels


class TextEmbedder:
    """
    Local sentence embedding with a transformers encoder and mean pooling.

    Default model: intfloat/multilingual-e5-large
    """

    def __init__(
        self,
        model_name: str = 'intfloat/multilingual-e5-large',
        device: str = 'cpu',
        batch_size: int = 32,
        max_length: int = 512
    ):
        if AutoModel is None or torch is None:
            raise ImportError(
                "Transformers and PyTorch not installed. "
                "Run: pip install transformers torch"
            )

        self.model_name = model_name
        self.batch_size = batch_size
        self.max_length = max_length
        self.device = _resolve_device(device)

        logger.info(f"Loading text encoder: {model_name}")
        self.tokenizer = AutoTokenizer.from_pretrained(model_name)
        self.model = AutoModel.from_pretrained(model_name).to(self.device)
        self.model.eval()
        logger.info(f"TextEmbedder initialized on {self.device}")

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed a batch of strings; one normalized vector per input, in order."""
        vectors: List[List[float]] = []
        try:
            for start in range(0, len(texts), self.batch_size):
                batch = list(texts[start:start + self.batch_size])
                inputs = self.tokenizer(
                    batch,
                    padding=True,
                    truncation=True,
                    max_length=self.max_length,
                    return_tensors='pt'
                ).to(self.device)

                with torch.no_grad():
                    outputs = self.model(**inputs)

                # Mean pooling over non-padding tokens
                mask = inputs['attention_mask'].unsqueeze(-1).float()
                summed = (outputs.last_hidden_state * mask).sum(dim=1)
                pooled = summed / mask.sum(dim=1).clamp(min=1e-9)
                pooled = torch.nn.functional.normalize(pooled, p=2, dim=1)
                vectors.extend(pooled.cpu().numpy().astype(np.float64).tolist())
        except Exception as e:
            raise ExternalServiceError(f"Text embedding failed: {e}") from e

        return vectors


class OpenAITextEmbedder:
    """Text embedding through the OpenAI embeddings API."""

    def __init__(
        self,
        model_name: str = 'text-embedding-3-small',
        api_key: Optional[str] = None
    ):
        if OpenAI is None:
            raise ImportError("OpenAI client not installed. Run: pip install openai")

        self.model_name = model_name
        self.client = OpenAI(api_key=api_key or os.environ.get('OPENAI_API_KEY'))
        logger.info(f"OpenAITextEmbedder initialized with {model_name}")

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        try:
            response = self.client.embeddings.create(model=self.model_name, input=list(texts))
        except Exception as e:
            raise ExternalServiceError(f"OpenAI embedding request failed: {e}") from e

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise ExternalServiceError(
                f"OpenAI returned {len(data)} embeddings for {len(texts)} inputs"
            )
        return [list(d.embedding) for d in data]


def create_text_embedder(backend: str, model_name: str, device: str = 'cpu'):
    """Build the configured text embedding client."""
    if backend == 'openai':
        return OpenAITextEmbedder(model_name=model_name)
    return TextEmbedder(model_name=model_name, device=device)
