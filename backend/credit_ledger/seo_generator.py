"""
SEO Copy Generation

Writes an SEO title and short/long descriptions for product rows with an
OpenAI chat model. Products are sent in batches; a batch the model fails
on falls back to text cut from the product's own fields, so every input
row gets exactly one output row, in input order.

The fields of one row are kept distinct: a field that repeats another is
replaced with a fragment of the product text that does not.

Also holds the per-user counter of completed generation runs.
"""

import json
import logging
import os
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from openai import AsyncOpenAI, OpenAIError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .config import SEO_CONFIG
from .models import GenerationCount

logger = logging.getLogger(__name__)

# target name -> (output field, max length)
TARGET_FIELDS = {
    "title": ("seoTitle", SEO_CONFIG["max_title"]),
    "short description": ("seoShort", SEO_CONFIG["max_short"]),
    "long description": ("seoLong", SEO_CONFIG["max_long"]),
}

GREEK = {"code": "EL", "name": "Greek", "script_note": "Greek script (Ελληνικά)"}
ENGLISH = {"code": "EN", "name": "English", "script_note": "Latin script"}

_GREEK_ALIASES = {"el", "gr", "el-gr", "greek", "ελ", "ελληνικα", "ελληνικά", "ellinika"}
_ENGLISH_ALIASES = {"en", "en-us", "en-gb", "english"}

_FRAGMENT_SEPARATORS = re.compile(r"[•·\-–—,.;:|/()\[\]\n]+")
_WHITESPACE = re.compile(r"\s+")


# ==================== TEXT HELPERS ====================

def normalize_language(value: Any) -> Dict[str, str]:
    """Map a language name or code to Greek or English (the default)."""
    raw = str(value or "").strip()
    lower = raw.lower()
    if lower in _GREEK_ALIASES:
        return GREEK
    if lower in _ENGLISH_ALIASES or not raw:
        return ENGLISH
    if "greek" in lower or "ελλην" in lower:
        return GREEK
    return ENGLISH


def chunk(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def product_text(product: Dict[str, Any]) -> str:
    """All non-id field values of a product, space separated."""
    values = [str(v or "") for k, v in product.items() if k != "id"]
    return _WHITESPACE.sub(" ", " ".join(values)).strip()


def _normalize_for_compare(text: str) -> str:
    stripped = "".join(" " if unicodedata.category(c)[0] in "PS" else c for c in str(text or "").lower())
    return _WHITESPACE.sub(" ", stripped).strip()


def too_similar(a: str, b: str) -> bool:
    """Equal, one containing the other, or a word Jaccard index of 0.7 or more."""
    left = _normalize_for_compare(a)
    right = _normalize_for_compare(b)
    if not left or not right:
        return False
    if left == right:
        return True
    if len(left) > 10 and (left in right or right in left):
        return True

    left_words = set(left.split(" "))
    right_words = set(right.split(" "))
    overlap = len(left_words & right_words)
    union = len(left_words) + len(right_words) - overlap
    return overlap / (union or 1) >= 0.7


def first_distinct_fragment(text: str, avoid: List[str], max_len: int) -> str:
    """First fragment of `text` not too similar to anything in `avoid`, clipped."""
    fragments = [p.strip() for p in _FRAGMENT_SEPARATORS.split(text or "") if p.strip()]
    for fragment in fragments:
        if not any(too_similar(fragment, other) for other in avoid):
            return fragment[:max_len]
    return (text or "")[:max_len]


def clip_row(row: Dict[str, Any], product: Dict[str, Any], targets: List[str]) -> Dict[str, Any]:
    """Keep only the requested fields, cut to their maximum lengths."""
    out = {"id": product.get("id")}
    for target in targets:
        field, max_len = TARGET_FIELDS[target]
        if row.get(field) is not None:
            out[field] = str(row[field])[:max_len]
    return out


def enforce_distinct(row: Dict[str, Any], product: Dict[str, Any], targets: List[str]) -> Dict[str, Any]:
    """Replace requested fields that repeat each other, and fill missing ones, from product text."""
    text = product_text(product)
    _, max_title = TARGET_FIELDS["title"]
    _, max_short = TARGET_FIELDS["short description"]
    _, max_long = TARGET_FIELDS["long description"]

    title = row.get("seoTitle") or ""
    short = row.get("seoShort") or ""
    long = row.get("seoLong") or ""

    if short and too_similar(short, title):
        short = first_distinct_fragment(text, [title], max_short)
    if long and (too_similar(long, title) or too_similar(long, short)):
        long = first_distinct_fragment(text, [title, short], max_long)
    if title and (too_similar(title, short) or too_similar(title, long)):
        title = first_distinct_fragment(text, [short, long], max_title) or title

    title = title[:max_title]
    short = short[:max_short] if short else first_distinct_fragment(text, [title], max_short)
    long = long[:max_long] if long else first_distinct_fragment(text, [title, short], max_long)

    out = {"id": row.get("id")}
    values = {"title": ("seoTitle", title), "short description": ("seoShort", short),
              "long description": ("seoLong", long)}
    for target in targets:
        field, value = values[target]
        out[field] = value
    return out


def fallback_row(product: Dict[str, Any], targets: List[str], language: Dict[str, str]) -> Dict[str, Any]:
    """Row built from the product's own text, used when the model call fails."""
    text = product_text(product)
    row = {"id": product.get("id")}
    for target in targets:
        field, max_len = TARGET_FIELDS[target]
        value = text[:max_len]
        if language["code"] == "EL":
            value = _WHITESPACE.sub(" ", f"Προϊόν: {value}").strip()
        row[field] = value
    return enforce_distinct(row, product, targets)


def build_prompt(products: List[Dict[str, Any]], targets: List[str],
                 language: Dict[str, str]) -> Tuple[str, str]:
    """System and user messages for one batch."""
    system = " ".join([
        "You are an SEO copywriter.",
        'Output ONLY a JSON object of the form {"items": [...]}.',
        f"Targets: {', '.join(targets)}.",
        f"Limits: seoTitle <= {SEO_CONFIG['max_title']}, seoShort <= {SEO_CONFIG['max_short']}, "
        f"seoLong <= {SEO_CONFIG['max_long']} characters.",
        "Each requested field MUST be semantically distinct from the others (no duplicates, no trivial paraphrases).",
        "Title should be a compact headline; short description a 1-2 sentence summary; "
        "long description adds extra detail not found verbatim in the others.",
        f"Language requirement: Write all requested fields ONLY in {language['name']}. "
        f"Use the {language['script_note']}.",
        "Do not mix languages. If Greek is requested, do NOT use English.",
        "Never hallucinate specifications; keep generic if details are missing.",
        "No emojis or salesy fluff. No repeated punctuation.",
        "No brand/trademark claims unless explicitly present in input.",
    ])

    fields = [
        f'- "{TARGET_FIELDS[t][0]}" for {t}' for t in targets
    ]
    user = "\n".join([
        'Return "items": ONE array with the same order and length as the input.',
        'Each object MUST include "id" and ONLY these fields:',
        *fields,
        "",
        "Products:",
        json.dumps(products, ensure_ascii=False, indent=2, default=str),
    ])
    return system, user


# ==================== GENERATOR ====================

class SeoGenerator:
    """Batched SEO copy generation over the OpenAI chat completions API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or SEO_CONFIG["model"]

    @property
    def configured(self) -> bool:
        return self._client is not None or bool(os.environ.get("OPENAI_API_KEY"))

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("OPENAI_API_KEY is not set")
            self._client = AsyncOpenAI(api_key=api_key)
        return self._client

    async def generate(self, products: List[Dict[str, Any]], targets: List[str], lang: str = "EN") -> List[Dict[str, Any]]:
        """
        Generate one row per product.

        Raises ValueError when no API key is configured. Model errors and
        unusable replies only affect their batch, which falls back to
        product text.
        """
        client = self._get_client()
        language = normalize_language(lang)
        rows = []

        for batch in chunk(products, SEO_CONFIG["batch_size"]):
            try:
                rows.extend(await self._generate_batch(client, batch, targets, language))
            except (OpenAIError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"SEO batch of {len(batch)} products fell back to product text: {e}")
                rows.extend(fallback_row(p, targets, language) for p in batch)

        logger.info(f"Generated SEO copy for {len(rows)} products ({language['code']}, targets={targets})")
        return rows

    async def _generate_batch(self, client: AsyncOpenAI, batch: List[Dict[str, Any]], targets: List[str],
                              language: Dict[str, str]) -> List[Dict[str, Any]]:
        system, user = build_prompt(batch, targets, language)
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
            temperature=SEO_CONFIG["temperature"],
        )

        items = json.loads(response.choices[0].message.content or "{}").get("items")
        if not isinstance(items, list) or len(items) != len(batch):
            raise ValueError(f"expected {len(batch)} rows, got {len(items) if isinstance(items, list) else 'none'}")

        return [
            enforce_distinct(clip_row(row, product, targets), product, targets)
            for row, product in zip(items, batch)
        ]


# ==================== GENERATION COUNTER ====================

class GenerationCounter:
    """Per-user count of SEO generation runs that produced output."""

    def __init__(self, db):
        self.collection = db.generation_counts

    async def increment(self, user_id: str) -> int:
        now = datetime.now(timezone.utc).isoformat()
        update = {
            "$inc": {"count": 1},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        }
        try:
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id}, update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            doc = await self.collection.find_one_and_update(
                {"user_id": user_id}, update,
                return_document=ReturnDocument.AFTER,
            )
        return doc["count"]

    async def get(self, user_id: str) -> GenerationCount:
        doc = await self.collection.find_one({"user_id": user_id}, {"_id": 0})
        if not doc:
            return GenerationCount(user_id=user_id)
        return GenerationCount(user_id=user_id, count=doc.get("count", 0), updated_at=doc.get("updated_at"))
