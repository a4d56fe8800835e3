"""
Versioned LLM prompts for screen-recording transcription and timeline synthesis.
Keep versions so a day can be reprocessed with the prompt it was built with.
"""

# ── Video transcription ───────────────────────────────────────────────────────

TRANSCRIPTION_V1 = """You are watching a {duration} screen recording of one person's computer.

Describe what the person is doing, as a chronological list of segments.
Each segment covers a stretch of continuous activity (usually 1-5 minutes).

Return ONLY a valid JSON array — no explanation, no markdown fences.
Each element must be:
{{
  "start": "MM:SS offset into the video where the activity begins",
  "end": "MM:SS offset where it ends",
  "description": "what is on screen and what the person is doing: apps, documents, sites, topics"
}}

Rules:
- Segments are ordered and must not overlap
- Timestamps must stay within the video length ({duration})
- Be specific: name the app, file, page or conversation when visible
- Idle or locked screens are a segment too ("Screen idle")

JSON array:"""


# ── Activity card synthesis ───────────────────────────────────────────────────

CARD_GENERATION_V1 = """You maintain a person's activity timeline. Turn the observations below into timeline cards.

Categories (use exactly one name per card):
{categories}

Existing cards for this period (revise them; keep a card's start time if your card continues it):
{existing_cards}

Observations:
{observations}

Return ONLY a valid JSON array — no explanation, no markdown fences.
Each element must be:
{{
  "start_time": "h:mm AM/PM",
  "end_time": "h:mm AM/PM",
  "category": "one of the category names above",
  "subcategory": "short free-form label",
  "title": "5-10 word title",
  "summary": "1-2 sentences",
  "detailed_summary": "minute-level account of what happened",
  "distractions": [
    {{"start_time": "h:mm AM/PM", "end_time": "h:mm AM/PM", "title": "...", "summary": "..."}}
  ]
}}

Rules:
- Cards must not overlap and together must cover the whole observed period without gaps
- Every card except the last must last at least {min_card_minutes} minutes
- Brief unrelated activity ({distraction_min_seconds} seconds up to {min_card_minutes} minutes) is a distraction inside the card, not a new card
- Only use the observations; do not invent activity

JSON array:"""


RETRY_FEEDBACK_V1 = """

PREVIOUS ATTEMPT FAILED. Your last answer had these problems:
{errors}

Fix every problem listed above and return the complete corrected JSON array."""


# ── Local model frame pipeline ────────────────────────────────────────────────

FRAME_DESCRIPTION_V1 = """This is a screenshot taken {offset} into a screen recording.
In one or two sentences, describe what the person is doing: the app in focus, the document,
site or conversation, and the task it suggests. Plain text only."""


FRAME_MERGE_V1 = """Below are screenshot descriptions taken at regular intervals from a {duration} screen recording.

{frames}

Group consecutive screenshots that show the same activity into segments.

Return ONLY a valid JSON array. Each element must be:
{{
  "start": "MM:SS",
  "end": "MM:SS",
  "description": "what the person did during this segment"
}}

Segments must be ordered, must not overlap, and must stay within {duration}.

JSON array:"""


# Active versions
CURRENT_TRANSCRIPTION_PROMPT = TRANSCRIPTION_V1
CURRENT_CARD_PROMPT = CARD_GENERATION_V1
CURRENT_RETRY_FEEDBACK = RETRY_FEEDBACK_V1
CURRENT_FRAME_PROMPT = FRAME_DESCRIPTION_V1
CURRENT_FRAME_MERGE_PROMPT = FRAME_MERGE_V1
