from __future__ import annotations

from typing import Sequence

from .state import HistoryEntry


def build_describe_prompt() -> str:
    return (
        "You are an expert in image analysis and in writing prompts for image generation models. "
        "Analyse the provided image in detail and write one detailed prompt that would make an image model "
        "produce a similar image. Cover style, colors, composition, subject features, mood, proportions, hair, "
        "lighting and any other relevant detail. Return ONLY the prompt text, no explanation or preamble."
    )


def build_refine_system_prompt() -> str:
    return (
        "You refine image-generation prompts. The goal is a prompt whose generated image is closer to the "
        "reference image. Focus on visual elements (art style, color tone, composition, lighting, mood, "
        "texture, proportions, hair) and improve or extend the given text. Return ONLY the refined prompt, "
        "detailed and specific, with no explanation."
    )


def build_refine_prompt(current_prompt: str, score: float, iteration: int) -> str:
    return (
        f"Current prompt: {current_prompt}\n\n"
        f"Similarity score: {score:.3f}\n"
        f"Iteration: {iteration}\n\n"
        "The first image is the reference, the second was generated from the current prompt. "
        "Compare their visual differences and refine the prompt so the next image is closer to the reference. "
        "Return only the refined prompt."
    )


def build_history_turn(entry: HistoryEntry) -> str:
    return f"Prompt at iteration {entry.iteration}: {entry.prompt}\n\nScore: {entry.score:.3f}"


def build_history_turns(history: Sequence[HistoryEntry]) -> list[dict]:
    return [{"role": entry.role, "parts": [{"text": build_history_turn(entry)}]} for entry in history]
