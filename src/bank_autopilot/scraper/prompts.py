"""LLM prompts for vision-based transaction extraction."""

VISION_EXTRACTION_PROMPT = """You are analyzing a bank transaction page screenshot. Extract ONLY the visible posted transactions from this single viewport.

WHAT TO LOOK FOR:
- Transaction tables or lists showing financial activity
- Columns typically include: Date, Description/Merchant, Amount, Balance
- Look for dollar amounts (positive or negative)
- Look for dates in any format (Feb 04, 02/04/2024, etc.)
- Look for merchant names or transaction descriptions

CRITICAL RULES:
1. Extract ONLY transactions visible in THIS screenshot (typically 10-50 recent transactions)
2. Skip any transactions marked as "pending" or "processing"
3. Only include transactions that have been posted/cleared
4. Clean merchant names (remove prefixes like "ACH", "DEBIT", "POS", "CARD PURCHASE", etc.)
5. Use negative amounts for expenses (money going out)
6. Use positive amounts for income (money coming in)
7. Parse dates in any format you see (Month DD, YYYY or MM/DD/YYYY, etc.)
8. If you see a balance column, include it
9. Do NOT include category - leave it empty (categories will be assigned later)

IMPORTANT: If you cannot find ANY transaction data in the image:
- Return an empty array: []
- The page might be a login screen, loading screen, or error page
- The page might not have finished loading transaction data yet

Return ONLY a JSON array with this exact structure (no markdown, no explanation):
[
  {
    "date": "Feb 04, 2026",
    "description": "Shake Shack",
    "amount": "-28.50",
    "balance": "2380.52",
    "category": "",
    "confidence": 95
  }
]

Extract every visible transaction in the screenshot. Focus on the most recent transactions shown."""


def get_extraction_prompt(override: str | None = None, screenshot_count: int = 1) -> str:
    """Build the extraction prompt, optionally replacing the built-in text."""
    prompt = override or VISION_EXTRACTION_PROMPT
    if screenshot_count > 1:
        prompt += (
            f"\n\nYou are given {screenshot_count} overlapping screenshots of the same page, top to bottom. "
            "Report each transaction once, in page order, even if it appears in two screenshots."
        )
    return prompt
