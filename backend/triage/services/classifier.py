"""
LLM email classifier.

Sorts emails into five buckets (ATTN, FK-U, MARKETING, TAKE-A-LOOK, HMMMM)
through any OpenAI-compatible chat completions endpoint (Groq by default),
and picks the most important recent emails with a short summary for each.
"""

import json
import re
import time
import logging
from enum import Enum
from typing import Dict, List, Optional
from datetime import datetime

import openai
from sqlalchemy.orm import Session

from ..config import settings
from ..models.classification import EmailClassification
from .content import format_for_classification

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MAX_TOKENS = 150
CLASSIFY_TEMPERATURE = 0.3
BULK_TEMPERATURE = 0.1
IMPORTANT_TEMPERATURE = 0.6
DEFAULT_CONFIDENCE = 0.8
MAX_IMPORTANT_EMAILS = 20

# Retry configuration for rate limiting
MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0  # seconds


class Bucket(str, Enum):
    ATTN = "ATTN"
    FK_U = "FK-U"
    MARKETING = "MARKETING"
    TAKE_A_LOOK = "TAKE-A-LOOK"
    HMMMM = "HMMMM"

    @classmethod
    def normalize(cls, value) -> "Bucket":
        """Map an LLM answer onto a bucket; anything unrecognised becomes HMMMM."""
        if isinstance(value, str):
            cleaned = value.strip().upper()
            for bucket in cls:
                if bucket.value == cleaned:
                    return bucket
        return cls.HMMMM


class ClassificationError(Exception):
    """Raised when the LLM call fails or returns something unusable."""


# ============================================================================
# PROMPTS
# ============================================================================

DEFAULT_CLASSIFICATION_PROMPT = """
You are an AI assistant that helps classify emails into categories.
Analyze the email content, subject, and sender to determine the most appropriate category.

Categories:
- ATTN: Urgent emails requiring immediate attention
- FK-U: Spam, scams, or unwanted communications
- MARKETING: Promotional emails and newsletters
- TAKE-A-LOOK: Non-urgent but potentially interesting or useful emails
- HMMMM: Emails that are ambiguous or need more context to categorize

Provide your classification and a brief explanation why in JSON format:
{"classification": "ATTN/FK-U/MARKETING/TAKE-A-LOOK/HMMMM", "reason": "your explanation here", "confidence": 0.0-1.0}"""

CONTENT_CLASSIFICATION_PROMPT = """Please classify this email as either:

ATTN: emails that are clearly from a real person that wanted to reach out to me for a specific reason. High value or time sensitive notifications also go here.
FK-U: people trying to sell me stuff via an email funnel, or trying to scam or phish me (ex. "what's your phone number").
MARKETING: classic marketing emails from companies. Safe to ignore. News digests like NY Times or Bloomberg fit here.
TAKE-A-LOOK: notification style emails I should glance at, ex. flight updates, bank updates, bills.
HMMMM: if you really aren't sure where to put it. Newsletters from individual builders belong in ATTN, not here.

Provide your classification and a brief explanation why in JSON format:
{"classification": "ATTN/FK-U/MARKETING/TAKE-A-LOOK/HMMMM", "reason": "your explanation here", "confidence": 0.0-1.0}"""

BULK_CLASSIFICATION_PROMPT = """You are an email classifier. You will receive a list of emails and must return a JSON object mapping email IDs to their classifications.

Classification Categories:
ATTN: emails that are clearly from a real person that wanted to reach out for a specific reason. High value or time sensitive notifications also go here.
FK-U: mass sales funnels, scams and phishing (ex. "what's your phone number").
MARKETING: classic marketing emails from companies. Safe to ignore. News and world updates fit here.
TAKE-A-LOOK: notification style emails worth a quick look, ex. flight updates, bank updates, bills.
HMMMM: if you really aren't sure where to put it.

Classification Rules:
- Personal message from friends or colleagues -> ATTN
- Investor updates and personal newsletters from people -> ATTN
- Tech feature announcements less than 14 days old -> TAKE-A-LOOK
- Tech feature announcements more than 14 days old -> MARKETING
- Mass outreach or sales pitches -> FK-U
- Impersonal outreach -> FK-U
- Service notifications (banking, flights) -> TAKE-A-LOOK
- Important threads that look concluded -> TAKE-A-LOOK
- Founder or builder outreach that may not be personalised -> HMMMM

REQUIRED OUTPUT FORMAT:
{
  "<email_id>": {
    "classification": "one of: ATTN/FK-U/MARKETING/TAKE-A-LOOK/HMMMM",
    "reason": "brief explanation"
  }
}"""

IMPORTANT_EMAILS_PROMPT = f"""You are an email analyzer that:
1. Selects the top {MAX_IMPORTANT_EMAILS} most important emails based on urgency, sender credibility, content relevance, and time sensitivity.
2. Ignores marketing emails and routine notifications from SaaS products or services unless they are genuinely important.
3. Writes a brief, actionable summary for each selected email in a casual, witty tone.

Return only a JSON object with an array "important_emails" containing objects with "id" and "summary" fields."""


# ============================================================================
# API CLIENT
# ============================================================================

def get_client() -> openai.OpenAI:
    """Initialize and return the chat completions client."""
    if not settings.LLM_API_KEY:
        raise ClassificationError("LLM_API_KEY not found in environment variables")
    # call_llm owns retries, so the SDK must not retry on its own
    return openai.OpenAI(api_key=settings.LLM_API_KEY, base_url=settings.LLM_BASE_URL, max_retries=0)


def _parse_json(response_text: str) -> Dict:
    try:
        return json.loads(response_text)
    except json.JSONDecodeError:
        logger.error(f"Failed to parse LLM response as JSON: {response_text}")
        # JSON mode should prevent this, but some models still wrap the object in text
        json_match = re.search(r"\{.*\}", response_text, re.DOTALL)
        if json_match:
            try:
                return json.loads(json_match.group(0))
            except json.JSONDecodeError:
                pass
        raise ClassificationError("LLM response was not valid JSON")


def call_llm(
    client: openai.OpenAI,
    system_prompt: str,
    user_message: str,
    temperature: float,
    max_tokens: Optional[int] = None,
) -> Dict:
    """
    Call the chat completions API in JSON mode with retry logic for rate limiting.

    Args:
        client: OpenAI-compatible client instance
        system_prompt: Instructions for the model
        user_message: Email content to analyze
        temperature: Sampling temperature
        max_tokens: Optional completion limit

    Returns:
        Parsed JSON object from the model

    Raises:
        ClassificationError: If the call fails after all retries or the answer is unusable
    """
    retry_delay = INITIAL_RETRY_DELAY

    kwargs = {
        "model": settings.LLM_MODEL,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        "temperature": temperature,
        "response_format": {"type": "json_object"},
    }
    if max_tokens:
        kwargs["max_tokens"] = max_tokens

    for attempt in range(MAX_RETRIES):
        try:
            response = client.chat.completions.create(**kwargs)
            response_text = response.choices[0].message.content
            if not response_text:
                raise ClassificationError("No response content from AI")
            return _parse_json(response_text)

        except openai.RateLimitError as e:
            # Rate limit hit (429)
            if attempt < MAX_RETRIES - 1:
                logger.warning(f"Rate limit hit, retrying in {retry_delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                time.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff
            else:
                logger.error(f"Rate limit exceeded after {MAX_RETRIES} retries")
                raise ClassificationError(f"Rate limit exceeded: {e}") from e

        except (openai.InternalServerError, openai.APIConnectionError) as e:
            # Server errors (500, 503) or connection issues
            if attempt < MAX_RETRIES - 1:
                logger.warning(f"API error: {str(e)}, retrying in {retry_delay}s (attempt {attempt + 1}/{MAX_RETRIES})")
                time.sleep(retry_delay)
                retry_delay *= 2
            else:
                logger.error(f"API error after {MAX_RETRIES} retries: {str(e)}")
                raise ClassificationError(f"LLM API unavailable: {e}") from e

        except openai.APIError as e:
            logger.error(f"LLM API error: {str(e)}")
            raise ClassificationError(f"LLM API error: {e}") from e

    raise ClassificationError(f"Failed to get response from LLM API after {MAX_RETRIES} retries")


# ============================================================================
# SINGLE EMAIL CLASSIFICATION
# ============================================================================

def _interpret(result: Dict) -> Dict:
    if not isinstance(result, dict) or not result.get("classification"):
        raise ClassificationError("Invalid classification response from AI")

    bucket = Bucket.normalize(result["classification"])
    if bucket.value != str(result["classification"]).strip().upper():
        logger.warning(f"Unknown bucket {result['classification']!r}, using {bucket.value}")

    confidence = result.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool) or not 0 < confidence <= 1:
        confidence = DEFAULT_CONFIDENCE

    return {
        "classification": bucket.value,
        "reason": result.get("reason") or "No reason provided",
        "confidence": float(confidence),
    }


def _fallback(error: Exception) -> Dict:
    return {
        "classification": Bucket.HMMMM.value,
        "reason": f"Classification failed: {error}",
        "confidence": 0.0,
    }


def classify_email(message: Dict, custom_prompt: Optional[str] = None) -> Dict:
    """
    Classify a Gmail message (full format).

    Args:
        message: Gmail message resource
        custom_prompt: User's prompt, replacing the default system prompt

    Returns:
        Dictionary with classification, reason and confidence.
        Any failure yields HMMMM with confidence 0.
    """
    logger.info(f"Classifying email {message.get('id')}")

    try:
        client = get_client()
        user_message = format_for_classification(message)
        result = call_llm(
            client,
            custom_prompt or DEFAULT_CLASSIFICATION_PROMPT,
            user_message,
            temperature=CLASSIFY_TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
        classification = _interpret(result)
        logger.info(f"Classified {message.get('id')} as {classification['classification']} ({classification['confidence']})")
        return classification

    except Exception as e:
        logger.error(f"Error classifying email {message.get('id')}: {str(e)}")
        return _fallback(e)


def classify_email_content(
    sender: str,
    subject: str,
    content: str,
    email_date: Optional[str] = None,
    custom_prompt: Optional[str] = None,
) -> Dict:
    """Classify caller-supplied email fields; same contract as classify_email."""
    user_message = (
        f"From: {sender}\n"
        f"Subject: {subject}\n"
        f"Content: {content}\n"
        f"Date Sent: {email_date or datetime.utcnow().isoformat()}"
    )

    try:
        client = get_client()
        result = call_llm(
            client,
            custom_prompt or CONTENT_CLASSIFICATION_PROMPT,
            user_message,
            temperature=CLASSIFY_TEMPERATURE,
            max_tokens=MAX_TOKENS,
        )
        return _interpret(result)

    except Exception as e:
        logger.error(f"Error classifying email from {sender}: {str(e)}")
        return _fallback(e)


# ============================================================================
# BULK ANALYSIS
# ============================================================================

def _email_payload(emails: List[Dict], fields: List[str]) -> str:
    return json.dumps([{field: email.get(field) for field in fields} for email in emails], default=str)


def classify_emails_bulk(emails: List[Dict]) -> Dict[str, Dict]:
    """
    Classify a list of emails in a single LLM call.

    Args:
        emails: Dictionaries with id, subject, content, sender and received_at

    Returns:
        Mapping of email id to {"classification", "reason"}; ids the model
        skipped are absent

    Raises:
        ClassificationError: If the call fails or the answer is not an object
    """
    if not emails:
        return {}

    client = get_client()
    result = call_llm(
        client,
        BULK_CLASSIFICATION_PROMPT,
        _email_payload(emails, ["id", "subject", "content", "sender", "received_at"]),
        temperature=BULK_TEMPERATURE,
    )

    if not isinstance(result, dict):
        raise ClassificationError("Failed to classify emails: expected a JSON object")

    known_ids = {email.get("id") for email in emails}
    classifications = {}
    for email_id, value in result.items():
        if email_id not in known_ids or not isinstance(value, dict):
            continue
        classifications[email_id] = {
            "classification": Bucket.normalize(value.get("classification")).value,
            "reason": value.get("reason") or "No reason provided",
        }

    logger.info(f"Bulk classified {len(classifications)}/{len(emails)} emails")
    return classifications


def analyze_important_emails(emails: List[Dict]) -> List[Dict]:
    """
    Pick the most important emails and summarise each one.

    Returns:
        Up to 20 {"id", "summary"} dictionaries, in the model's order

    Raises:
        ClassificationError: If the call fails or the answer has no important_emails list
    """
    if not emails:
        return []

    client = get_client()
    result = call_llm(
        client,
        IMPORTANT_EMAILS_PROMPT,
        _email_payload(
            emails,
            ["id", "subject", "snippet", "sender", "content", "received_at", "is_read", "label_ids"],
        ),
        temperature=IMPORTANT_TEMPERATURE,
    )

    important = result.get("important_emails") if isinstance(result, dict) else None
    if not isinstance(important, list):
        raise ClassificationError("Failed to analyze emails: missing important_emails")

    summaries = [
        {"id": item["id"], "summary": item.get("summary", "")}
        for item in important
        if isinstance(item, dict) and item.get("id")
    ]
    return summaries[:MAX_IMPORTANT_EMAILS]


# ============================================================================
# PERSISTENCE
# ============================================================================

def store_classification(db: Session, email_id: str, user_id: int, result: Dict) -> EmailClassification:
    """Insert or overwrite the classification for (email_id, user_id)."""
    record = db.query(EmailClassification).filter(
        EmailClassification.email_id == email_id,
        EmailClassification.user_id == user_id,
    ).first()

    if record is None:
        record = EmailClassification(email_id=email_id, user_id=user_id)
        db.add(record)

    record.category = result["classification"]
    record.confidence = result["confidence"]
    record.reason = result.get("reason")
    record.classified_at = datetime.utcnow()

    db.commit()
    db.refresh(record)
    return record
