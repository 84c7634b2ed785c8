from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw
from PIL.PngImagePlugin import PngInfo

from .. import config
from .. import prompts as _p
from ..errors import EmptyResult, GenerationFailure, InvalidImage, ServiceRefusal, TransportError
from ..logging_config import log_timer, preview
from ..state import HistoryEntry
from .refusal import RefusalClassifier, extract_prompt, refusal_hint

logger = logging.getLogger(__name__)


def call_gemini(kind: str, **kwargs) -> Dict[str, Any]:
    """Unified entry for Gemini calls.

    kind: one of {"describe", "image_generate", "refine", "embed"}
    kwargs: payload for the corresponding action

    If no API key is configured, falls back to deterministic local placeholders
    so the search remains runnable offline.
    """
    api_key = config.get_api_key()
    if not api_key:
        return _local_placeholder(kind, **kwargs)
    return _real_gemini(kind, api_key=api_key, **kwargs)


# ------------------------- Offline placeholders -------------------------

_PALETTE: Dict[str, Tuple[int, int, int]] = {
    "black": (20, 20, 20),
    "white": (240, 240, 240),
    "gray": (128, 128, 128),
    "red": (200, 40, 40),
    "orange": (240, 140, 30),
    "yellow": (235, 215, 50),
    "green": (50, 160, 70),
    "teal": (30, 140, 140),
    "blue": (40, 80, 200),
    "navy": (20, 30, 90),
    "purple": (120, 50, 160),
    "pink": (235, 130, 180),
    "brown": (120, 80, 40),
}
_EMBED_DIM = 256


def _local_placeholder(kind: str, **kwargs) -> Dict[str, Any]:
    if kind == "describe":
        return {"text": _describe_local(kwargs["image_path"])}

    if kind == "image_generate":
        prompt: str = kwargs.get("prompt", "")
        out_path = Path(kwargs["out_path"])
        _write_placeholder_image(out_path, prompt)
        return {"path": str(out_path), "mime": "image/png"}

    if kind == "refine":
        # Pull the reference's own description to the front; colors are read in order
        ref_text = _describe_local(kwargs["reference_image"])
        current: str = kwargs.get("current_prompt", "")
        return {"text": f"{ref_text}. {current}"[:600]}

    if kind == "embed":
        return {"embedding": _hashed_embedding(kwargs.get("text", ""))}

    raise ValueError(f"Unsupported kind={kind}")


def _nearest_color(rgb: Tuple[int, int, int]) -> str:
    r, g, b = rgb[:3]
    return min(_PALETTE, key=lambda n: sum((c - p) ** 2 for c, p in zip((r, g, b), _PALETTE[n])))


def _describe_local(image_path: str) -> str:
    try:
        with Image.open(image_path) as im:
            img = im.convert("RGB")
    except OSError as e:
        raise InvalidImage(f"Failed to read image file: {image_path}") from e

    w, h = img.size
    orientation = "square" if abs(w - h) < 0.05 * max(w, h) else ("landscape" if w > h else "portrait")
    small = img.resize((32, 32))
    counts: Dict[str, int] = {}
    for count, rgb in small.getcolors(32 * 32) or []:
        name = _nearest_color(rgb)
        counts[name] = counts.get(name, 0) + count
    top = [n for n, _ in sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:3]]
    brightness = float(np.asarray(small.convert("L"), dtype=float).mean())
    tone = "dark" if brightness < 85 else ("bright" if brightness > 170 else "balanced")
    return f"{orientation} image in {', '.join(top)} colors with {tone} lighting"


def _write_placeholder_image(path: Path, prompt: str) -> None:
    words = re.findall(r"[a-z]+", prompt.lower())
    colors: List[str] = []
    for w in words:
        if w in _PALETTE and w not in colors:
            colors.append(w)
    colors = colors[:3] or ["gray"]
    size = (1024, 768) if "landscape" in words else (768, 1024) if "portrait" in words else (1024, 1024)

    img = Image.new("RGB", size, _PALETTE[colors[0]])
    draw = ImageDraw.Draw(img)
    # first color dominates; the rest are bands along the bottom
    band_h = size[1] // 5
    for i, name in enumerate(colors[1:]):
        y0 = size[1] - band_h * (i + 1)
        draw.rectangle([0, y0, size[0], y0 + band_h], fill=_PALETTE[name])

    info = PngInfo()
    info.add_text("prompt", prompt[:1000])
    path.parent.mkdir(parents=True, exist_ok=True)
    img.save(path, format="PNG", pnginfo=info)


def _hashed_embedding(text: str) -> List[float]:
    vec = np.zeros(_EMBED_DIM, dtype=float)
    for token in re.findall(r"\w+", text.lower()):
        idx = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % _EMBED_DIM
        vec[idx] += 1.0
    return vec.tolist()


# ------------------------- Real Google GenAI calls -------------------------

def _embedding_model() -> str:
    name = config.GEMINI_EMBEDDING_MODEL
    if name in config.IMAGE_ONLY_MODELS:
        logger.warning(
            f"Embedding model '{name}' appears to be an image generation model, "
            f"using {config.DEFAULT_EMBEDDING_MODEL}"
        )
        return config.DEFAULT_EMBEDDING_MODEL
    return name


def _real_gemini(kind: str, *, api_key: str, **kwargs) -> Dict[str, Any]:
    import google.generativeai as genai
    from google.api_core import exceptions as gexc

    genai.configure(api_key=api_key)
    timeout = float(kwargs.pop("timeout", config.CALL_TIMEOUT))
    try:
        return _real_call(genai, kind, timeout=timeout, **kwargs)
    except (gexc.GoogleAPIError, ConnectionError, TimeoutError) as e:
        logger.error(f"Gemini {kind} call failed: {e}")
        raise TransportError(f"Gemini {kind} call failed: {e}") from e


def _real_call(genai: Any, kind: str, *, timeout: float, **kwargs) -> Dict[str, Any]:
    text_model_name = config.GEMINI_MODEL
    request_options = {"timeout": timeout}

    if kind == "describe":
        image_path: str = kwargs["image_path"]
        model = genai.GenerativeModel(text_model_name)
        logger.debug(f"API request: describe {image_path} with {text_model_name}")
        resp = model.generate_content(
            [{"text": _p.build_describe_prompt()}, _image_part_from_path(image_path)],
            generation_config={"temperature": float(kwargs.get("temperature", 0.7)), "max_output_tokens": 500},
            request_options=request_options,
        )
        content = _first_text(resp)
        logger.debug(f"API response: describe -> {preview(content, 500)}")
        return {"text": content}

    if kind == "image_generate":
        prompt: str = kwargs["prompt"]
        out_path = Path(kwargs["out_path"])
        image_model_name = config.GEMINI_IMAGE_MODEL
        if not image_model_name:
            raise GenerationFailure(
                "GEMINI_IMAGE_MODEL is not set. Please set it to a valid image model "
                "(e.g., 'gemini-2.5-flash-image')."
            )
        mdl = genai.GenerativeModel(model_name=image_model_name)
        logger.debug(f"API request: image_generate with {image_model_name}, prompt={preview(prompt)}")
        resp = mdl.generate_content(prompt, request_options=request_options)
        img_bytes, mime = _first_image_bytes(resp)
        if not img_bytes:
            raise GenerationFailure(f"image model did not return image bytes: {preview(resp, 500)}")
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "wb") as f:
            f.write(img_bytes)
        with open(str(out_path) + ".meta.json", "w", encoding="utf-8") as mf:
            mf.write(json.dumps({"source": "gemini", "mime": mime, "bytes": len(img_bytes)}, ensure_ascii=False))
        return {"path": str(out_path), "mime": mime}

    if kind == "refine":
        history: Sequence[HistoryEntry] = kwargs.get("history") or []
        model = genai.GenerativeModel(text_model_name, system_instruction=_p.build_refine_system_prompt())
        contents = _p.build_history_turns(history)
        contents.append({
            "role": "user",
            "parts": [
                {"text": _p.build_refine_prompt(kwargs["current_prompt"], kwargs["score"], kwargs["iteration"])},
                _image_part_from_path(kwargs["reference_image"]),
                _image_part_from_path(kwargs["generated_image"]),
            ],
        })
        logger.debug(f"API request: refine iteration={kwargs['iteration']} history={len(history)}")
        resp = model.generate_content(
            _merge_turns(contents),
            generation_config={"temperature": 0.7, "max_output_tokens": 500},
            request_options=request_options,
        )
        content = _first_text(resp)
        logger.debug(f"API response: refine -> {preview(content, 500)}")
        return {"text": content}

    if kind == "embed":
        res = genai.embed_content(model=_embedding_model(), content=kwargs.get("text", ""), request_options=request_options)
        try:
            embedding = list(res["embedding"])
        except (KeyError, TypeError):
            logger.warning(f"Malformed embedding response: {preview(res, 200)}")
            embedding = []
        logger.debug(f"Text embedding received, dimension={len(embedding)}")
        return {"embedding": embedding}

    raise ValueError(f"Unsupported kind={kind}")


def _merge_turns(contents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # consecutive turns of one role are sent as a single turn
    merged: List[Dict[str, Any]] = []
    for turn in contents:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1]["parts"].extend(turn["parts"])
        else:
            merged.append({"role": turn["role"], "parts": list(turn["parts"])})
    return merged


def _first_text(resp: Any) -> str:
    try:
        if hasattr(resp, "text"):
            return resp.text
    except ValueError:
        # blocked responses raise on .text; fall through to the parts
        pass
    cands = getattr(resp, "candidates", None) or []
    if cands:
        content = getattr(cands[0], "content", None)
        for part in getattr(content, "parts", None) or []:
            if getattr(part, "text", None):
                return part.text
    return ""


def _first_image_bytes(resp: Any) -> Tuple[Optional[bytes], str]:
    # resp.candidates[].content.parts[].inline_data
    for c in getattr(resp, "candidates", None) or []:
        content = getattr(c, "content", None)
        parts = getattr(content, "parts", None) if content else None
        for part in parts or []:
            inline = getattr(part, "inline_data", None)
            if inline and getattr(inline, "data", None):
                data = inline.data
                mime = getattr(inline, "mime_type", "image/png")
                if isinstance(data, bytes):
                    return data, mime
                # some versions may base64-encode
                return base64.b64decode(data), mime
    return None, ""


def _image_part_from_path(path: str) -> Dict[str, Any]:
    # google-generativeai accepts dict with mime_type and data bytes for images
    p = Path(path)
    suffix = p.suffix.lower()
    mime = {".png": "image/png", ".webp": "image/webp"}.get(suffix, "image/jpeg")
    try:
        data = p.read_bytes()
    except OSError as e:
        raise InvalidImage(f"Failed to read image file: {path}") from e
    return {"mime_type": mime, "data": data}


# ------------------------- Service facade -------------------------

class GeminiService:
    """GenerativeService backed by ``call_gemini`` with typed failures."""

    def __init__(
        self,
        classifier: Optional[RefusalClassifier] = None,
        timeout: float = config.CALL_TIMEOUT,
        max_image_bytes: int = config.MAX_IMAGE_BYTES,
    ) -> None:
        self.classifier = classifier or RefusalClassifier.default()
        self.timeout = timeout
        self.max_image_bytes = max_image_bytes
        logger.info(
            f"GeminiService initialized (text={config.GEMINI_MODEL}, image={config.GEMINI_IMAGE_MODEL or '-'}, "
            f"embedding={config.GEMINI_EMBEDDING_MODEL}, offline={config.get_api_key() is None})"
        )

    def _check_image(self, image: str) -> None:
        p = Path(image)
        if not p.is_file():
            raise InvalidImage(f"Image file not found: {image}")
        size = p.stat().st_size
        if size > self.max_image_bytes:
            raise InvalidImage(
                f"Image file too large ({size} bytes, max {self.max_image_bytes}); resize it and try again."
            )

    def _validate_text(self, content: str, what: str) -> str:
        content = content.strip()
        if not content:
            logger.error(f"Empty {what} response from API")
            raise EmptyResult(f"Empty {what} response from API")
        if self.classifier.is_refusal(content):
            logger.error(f"API returned a refusal for {what}: {preview(content, 500)}")
            message = f"API returned an error or refusal message: {content[:200]}"
            hint = refusal_hint(content)
            raise ServiceRefusal(f"{message}\n\n{hint}" if hint else message)
        return content

    def describe_image(self, image: str) -> str:
        self._check_image(image)
        with log_timer(logger, f"describe_image {Path(image).name}"):
            res = call_gemini("describe", image_path=image, timeout=self.timeout)
        return self._validate_text(extract_prompt(res.get("text") or ""), "describe")

    def caption_image(self, image: str) -> str:
        """Plain description used for similarity scoring.

        Whatever the model says is embedded as is; only an empty answer fails.
        """
        self._check_image(image)
        with log_timer(logger, f"caption_image {Path(image).name}"):
            res = call_gemini("describe", image_path=image, temperature=0.3, timeout=self.timeout)
        content = (res.get("text") or "").strip()
        if not content:
            raise EmptyResult(f"Empty caption for {image}")
        return content

    def generate_image(self, prompt: str, out_path: str) -> str:
        logger.info(f"Generating image -> {out_path} (prompt: {preview(prompt)})")
        with log_timer(logger, f"generate_image {Path(out_path).name}"):
            res = call_gemini("image_generate", prompt=prompt, out_path=out_path, timeout=self.timeout)
        path = res.get("path") or ""
        if not path or not Path(path).exists():
            raise GenerationFailure(f"Failed to generate image: nothing written to {out_path}")
        return path

    def refine_prompt(
        self,
        current_prompt: str,
        reference_image: str,
        generated_image: str,
        score: float,
        iteration: int,
        history: Optional[Sequence[HistoryEntry]] = None,
    ) -> str:
        self._check_image(reference_image)
        self._check_image(generated_image)
        logger.info(
            f"Refining prompt (iteration={iteration}, score={score:.3f}, "
            f"history={len(history) if history is not None else 'none'})"
        )
        with log_timer(logger, f"refine_prompt iteration {iteration}"):
            res = call_gemini(
                "refine",
                current_prompt=current_prompt,
                reference_image=reference_image,
                generated_image=generated_image,
                score=score,
                iteration=iteration,
                history=list(history or []),
                timeout=self.timeout,
            )
        return self._validate_text(res.get("text") or "", "refine")

    def embed(self, text: str) -> List[float]:
        res = call_gemini("embed", text=text, timeout=self.timeout)
        return list(res.get("embedding") or [])
