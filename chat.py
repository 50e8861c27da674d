"""
Inventory assistant: builds a prompt from the current stock and asks an
OpenAI-compatible chat-completions endpoint to answer.
"""
import json
import logging
import re
from typing import List

import requests
from sqlmodel import Session, select

import config
from models import Item
from stock import derive_status

logger = logging.getLogger(__name__)

MAX_TOKENS = 500
TEMPERATURE = 0.7

# Letters outside ASCII are matched case-sensitively, so "s" never folds into "ſ"
INDONESIAN_HINTS = re.compile(
    r"[Ā-ſ]|(?i:\b(apa|yang|ada|barang|stok|tersedia|produk|kategori|harga|"
    r"jumlah|saya|bisa|tolong|bantuan|cari|lihat|mana|dimana|berapa|kapan|"
    r"bagaimana|kenapa|siapa)\b)"
)

GUIDELINES_EN = """\
- Be helpful and friendly
- Provide accurate information about items based on the current inventory
- If asked about specific items, check the inventory data
- Help users understand stock levels (in-stock, low-stock, out-of-stock)
- Suggest alternatives if requested items are out of stock
- Format responses clearly and concisely
- If you don't have information about something, say so clearly"""

GUIDELINES_ID = """\
- Bersikap ramah dan membantu
- Berikan informasi akurat tentang barang berdasarkan data inventori saat ini
- Jika ditanya tentang barang tertentu, periksa data inventori
- Bantu pengguna memahami status stok (tersedia, stok rendah, habis)
- Sarankan alternatif jika barang yang diminta habis
- Format respons dengan jelas dan ringkas
- Jika tidak memiliki informasi tentang sesuatu, katakan dengan jelas
- Untuk status stok: "tersedia" (in-stock), "stok rendah" (low-stock), "habis" (out-of-stock)"""


class ChatUnavailable(Exception):
    """The language model is not configured or refused the call."""

    def __init__(self, message: str, status_code: int = 503):
        super().__init__(message)
        self.status_code = status_code


def items_context(session: Session) -> List[dict]:
    items = session.exec(
        select(Item).where(Item.is_active == True).order_by(Item.name)  # noqa: E712
    ).all()
    return [
        {
            "id": item.id,
            "name": item.name,
            "description": item.description,
            "category": item.category,
            "quantity": item.quantity,
            "minQuantity": item.min_quantity,
            "status": derive_status(item.quantity, item.min_quantity),
            "price": item.price,
        }
        for item in items
    ]


def is_indonesian(message: str) -> bool:
    return INDONESIAN_HINTS.search(message) is not None


def build_system_prompt(context: List[dict], indonesian: bool) -> str:
    language = (
        "Respond in Bahasa Indonesia (Indonesian language)"
        if indonesian
        else "Respond in English"
    )
    return (
        'You are a helpful AI assistant for an inventory management system called "Gudang Mitra".\n'
        "You help users find information about items in the inventory, check availability, "
        "compare products, and answer questions about stock levels.\n\n"
        f"IMPORTANT: {language}.\n\n"
        f"Current inventory items:\n{json.dumps(context, indent=2)}\n\n"
        f"Guidelines:\n{GUIDELINES_ID if indonesian else GUIDELINES_EN}\n"
    )


def complete(messages: List[dict]) -> str:
    """Send a chat-completions call and return the assistant's text."""
    if not config.OPENAI_API_KEY:
        raise ChatUnavailable("AI assistant is not configured")

    try:
        response = requests.post(
            f"{config.OPENAI_BASE_URL.rstrip('/')}/chat/completions",
            headers={"Authorization": f"Bearer {config.OPENAI_API_KEY}"},
            json={
                "model": config.OPENAI_MODEL,
                "messages": messages,
                "max_tokens": MAX_TOKENS,
                "temperature": TEMPERATURE,
            },
            timeout=config.CHAT_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.error("Chat completion call failed: %s", exc)
        raise ChatUnavailable("AI service is unreachable", status_code=502) from exc

    if response.status_code == 429:
        raise ChatUnavailable(
            "AI service temporarily unavailable. Please try again later.",
            status_code=429,
        )
    if not response.ok:
        logger.error("Chat completion returned %s: %s", response.status_code, response.text[:200])
        raise ChatUnavailable("Failed to process chat message", status_code=502)

    try:
        return response.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError) as exc:
        raise ChatUnavailable("Unexpected response from AI service", status_code=502) from exc


def answer(session: Session, message: str) -> str:
    context = items_context(session)
    messages = [
        {"role": "system", "content": build_system_prompt(context, is_indonesian(message))},
        {"role": "user", "content": message},
    ]
    return complete(messages)
