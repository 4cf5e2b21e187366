"""
generation.py - Grounded answer generation via llama-cpp-python.

The generator gets the bidder's question plus the labelled context built
by ContextBuilder and must answer as strict JSON:

    {"answer": "...", "confidence": 0.0-1.0, "evidence": ["<chunk_id>", ...]}

The same anti-hallucination rules as the old extraction prompts apply:
answer only from the provided sources, cite chunk ids exactly as they
appear in the [SOURCE ...] labels, and say so (with low confidence) when
the sources do not contain the answer. Nothing the model says is trusted
blindly; the confidence evaluator re-checks numbers and citations.

The generator itself does not retry. It runs inside call_with_retry on
the query path, which owns timeouts and the retry budget.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from tender_qa.config import LLMConfig, config
from tender_qa.errors import GenerationError
from tender_qa.schemas import GenerationResponse

logger = logging.getLogger(__name__)


# ── Prompt ────────────────────────────────────────────────────────────────
# Asking for bare JSON works better with Mistral than asking for ```json
# blocks. The double braces are str.format escaping.

ANSWER_PROMPT = """[INST] You answer bidder questions about a tender. Use ONLY the sources below.

RULES:
1. Answer ONLY from the provided sources. Do NOT add outside knowledge.
2. Copy numbers, amounts and dates exactly as they appear in the sources.
3. List in "evidence" the chunk id of every source you used, exactly as written after SOURCE in its label.
4. If the sources do not contain the answer, say so in "answer" and give a confidence below 0.3.
5. "confidence" is your probability (0.0 to 1.0) that the answer is correct and complete.

SOURCES:
{context}

QUESTION:
{question}

OUTPUT FORMAT (respond ONLY with valid JSON, no markdown fences):
{{"answer": "...", "confidence": <float>, "evidence": ["<chunk_id>", ...]}}
[/INST]"""

_SOURCE_ID_RE = re.compile(r"SOURCE\s+([^\s|\]]+)")


class BaseGenerator(ABC):
    @abstractmethod
    def generate(self, question: str, context: str) -> GenerationResponse:
        """
        Answer question from context.

        Raises:
            GenerationError: transport failure or output that does not
                parse into a GenerationResponse.
        """


class LlamaCppGenerator(BaseGenerator):
    """
    Local GGUF model through llama-cpp-python, lazy-loaded on first use.

    Loading takes ~10s and ~4GB of RAM, so one instance should be shared
    by the whole process.
    """

    def __init__(self, llm_config: Optional[LLMConfig] = None):
        self._config = llm_config or config.llm
        self._llm = None

    def _get_llm(self):
        if self._llm is not None:
            return self._llm
        try:
            from llama_cpp import Llama

            logger.info("Loading LLM from: %s", self._config.model_path)
            self._llm = Llama(
                model_path=self._config.model_path,
                n_ctx=self._config.n_ctx,
                n_threads=self._config.n_threads or None,
                verbose=False,
            )
            logger.info("LLM loaded successfully.")
            return self._llm
        except FileNotFoundError as exc:
            raise GenerationError(
                f"LLM model file not found: '{self._config.model_path}'. "
                f"Download a GGUF instruct model and set LLM_MODEL_PATH."
            ) from exc
        except ImportError as exc:
            raise GenerationError(
                "llama-cpp-python is not installed; install the 'llm' extra"
            ) from exc

    def generate(self, question: str, context: str) -> GenerationResponse:
        prompt = ANSWER_PROMPT.format(context=context, question=question)
        llm = self._get_llm()
        try:
            response = llm(
                prompt,
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                # Stops runaway explanation text after the closing brace
                stop=["```", "\n\n\n"],
            )
            raw_output = response["choices"][0]["text"].strip()
        except Exception as exc:
            raise GenerationError(f"LLM call failed: {exc}") from exc

        logger.info("LLM generated %d chars", len(raw_output))
        return parse_generation(raw_output)


def parse_generation(raw_output: str) -> GenerationResponse:
    """
    Turn raw model output into a validated GenerationResponse.

    Raises:
        GenerationError: output is not JSON or misses required fields.
    """
    parsed = _parse_json_output(raw_output)
    if parsed is None:
        logger.error("Could not parse LLM output as JSON. First 500 chars: %s",
                     raw_output[:500])
        raise GenerationError("generator output is not valid JSON")

    parsed["evidence"] = normalize_evidence(parsed.get("evidence"))
    try:
        return GenerationResponse.model_validate(parsed)
    except ValidationError as exc:
        raise GenerationError(f"generator output failed validation: {exc}") from exc


def normalize_evidence(evidence: Any) -> List[str]:
    """
    Reduce cited evidence to bare chunk ids.

    Models sometimes echo the whole "[SOURCE id | page 3]" label or give a
    single string instead of a list.
    """
    if evidence is None:
        return []
    if isinstance(evidence, str):
        evidence = [evidence]
    if not isinstance(evidence, list):
        return []

    ids: List[str] = []
    for item in evidence:
        if isinstance(item, dict):
            item = item.get("chunk_id", "")
        text = str(item).strip()
        match = _SOURCE_ID_RE.search(text)
        cid = match.group(1) if match else text.strip("[]").strip()
        if cid and cid not in ids:
            ids.append(cid)
    return ids


def _parse_json_output(text: str) -> Optional[Dict[str, Any]]:
    """
    Multi-strategy JSON parser for LLM output.

    In order of strictness:
    1. Direct parse
    2. Strip markdown fences and retry
    3. Regex extract the first {...} object
    4. Give up and return None
    """
    try:
        result = json.loads(text)
        return result if isinstance(result, dict) else None
    except json.JSONDecodeError:
        pass

    cleaned = re.sub(r"```(?:json)?\s*", "", text)
    cleaned = cleaned.strip().rstrip("`")
    try:
        result = json.loads(cleaned)
        return result if isinstance(result, dict) else None
    except json.JSONDecodeError:
        pass

    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        try:
            result = json.loads(match.group())
            return result if isinstance(result, dict) else None
        except json.JSONDecodeError:
            pass

    return None
