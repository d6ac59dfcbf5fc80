"""Prompt templates for caption generation and boosting.

Both prompts pin the same markdown output shape so parse_result() can split
captions from hashtags.
"""

OUTPUT_FORMAT = """## Captions
1. "..."
2. "..."
3. "..."
4. "..."
5. "..."

## Hashtags
#Tag1 #Tag2 #Tag3 ..."""

GENERATE_PROMPT = """You are a viral social media copywriter.
Platform: {platform}
Tone: {tone}
Idea: "{idea}"
{brand_voice_block}
Write:
- 5 short, punchy captions (under 280 chars each)
- 30 relevant, trending hashtags

Return in EXACTLY this format:

{output_format}"""

BOOST_PROMPT = """You are a world-class viral social media copywriter.

We already have AI-generated captions + hashtags, but we want to BOOST ENGAGEMENT.

Platform: {platform}
Tone: {tone}
Idea: "{idea}"
{brand_voice_block}
CURRENT OUTPUT:
{captions}

Your job:
- Rewrite and improve the 5 captions to maximize:
  - Hook in the first line
  - Clarity and readability (short lines, strong flow)
  - Strong, specific CTA
- Clean up and optimize the hashtag set:
  - Mix of 2-3 broad tags and 10+ niche/targeted tags
  - Avoid duplicates and spammy tags

IMPORTANT:
- Keep the same structure and formatting as the current output.
- Return in EXACTLY this format:

{output_format}"""

PLATFORM_LIMITS = {
    "x": 280,
    "twitter": 280,
    "threads": 500,
    "instagram": 2200,
    "tiktok": 2200,
    "linkedin": 3000,
    "facebook": 2200,
}


def brand_voice_block(brand_voice: str | None) -> str:
    if not brand_voice or not brand_voice.strip():
        return ""
    return f"Brand voice (match it closely): {brand_voice.strip()}\n"
