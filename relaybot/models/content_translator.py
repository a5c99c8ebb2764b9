"""
Content modality translation.

Before history goes to a model, media blocks the model cannot read are
replaced by text descriptions produced by a translator model. Descriptions
are cached in ``content_translations`` keyed by (content hash, translator
model), so each distinct attachment is described once per translator.
"""

import dataclasses
import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence

from relaybot.core.content import MEDIA_TYPES, Block, TextBlock, UserMessage
from relaybot.interfaces.message_formatting import format_user_content
from relaybot.memory.store import ConversationStore, MessageRow

logger = logging.getLogger(__name__)

TRANSLATION_PROMPTS: Dict[str, str] = {
    "image": "Describe this image in detail. Include all visible text, numbers, data, and visual elements.",
    "audio": "Transcribe and describe this audio content in detail.",
    "video": "Describe this video content in detail. Include all visible text, actions, and visual elements.",
}

DESCRIPTION_LABELS: Dict[str, str] = {
    "image": "Image description",
    "audio": "Audio description",
    "video": "Video description",
}


def hash_content(data: str) -> str:
    """First 16 hex chars of SHA-256 over the raw base64 payload."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def unsupported_placeholder(modality: str) -> str:
    return f"[Unsupported {modality}]"


def _needs_translation(block: Block, supported: Sequence[str]) -> bool:
    return block.type in MEDIA_TYPES and block.type not in supported


class ContentTranslator:
    """Rewrites unsupported media in user messages into cached descriptions."""

    def __init__(
        self,
        store: ConversationStore,
        llm_client: Any,
        models_cache: Any,
        default_content_model: Optional[str] = None,
    ) -> None:
        self.store = store
        self.llm = llm_client
        self.models = models_cache
        self.default_content_model = default_content_model

    def translate(
        self,
        rows: List[MessageRow],
        target_model_id: str,
        content_models: Optional[Dict[str, str]] = None,
    ) -> List[MessageRow]:
        """Return ``rows`` unchanged (same object) or a copy with media replaced.

        Raises:
            CompletionServiceError: the translator model call failed.
        """
        supported = self.models.get_model_modalities(target_model_id)
        content_models = content_models or {}

        result: Optional[List[MessageRow]] = None
        for i, row in enumerate(rows):
            msg = row.message_data
            if not isinstance(msg, UserMessage):
                continue
            if not any(_needs_translation(b, supported) for b in msg.content):
                continue
            new_content = [
                self._translate_block(b, content_models) if _needs_translation(b, supported) else b
                for b in msg.content
            ]
            if result is None:
                result = list(rows)
            result[i] = dataclasses.replace(row, message_data=UserMessage(new_content))

        return rows if result is None else result

    def _translate_block(self, block: Any, content_models: Dict[str, str]) -> TextBlock:
        modality = block.type
        model_id = content_models.get(modality) or self.default_content_model
        if not model_id:
            return TextBlock(unsupported_placeholder(modality))

        content_hash = hash_content(block.data)
        translation = self.store.get_translation(content_hash, model_id)
        if translation is None:
            translation = self._describe(block, model_id)
            self.store.save_translation(content_hash, model_id, translation)
            logger.info("Cached %s description %s for %s", modality, content_hash, model_id)
        else:
            logger.debug("Translation cache hit %s/%s", content_hash, model_id)

        label = DESCRIPTION_LABELS.get(modality, f"{modality} description")
        return TextBlock(f"[{label}: {translation}]")

    def _describe(self, block: Any, model_id: str) -> str:
        prompt = TRANSLATION_PROMPTS.get(block.type, f"Describe this {block.type} content in detail.")
        parts = format_user_content(UserMessage([TextBlock(prompt), block]))
        completion = self.llm.complete(model_id, None, [{"role": "user", "content": parts}])
        return completion.text or f"[Failed to describe {block.type}]"
