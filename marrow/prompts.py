"""
Prompt text for structural discovery.
"""


SYSTEM_INSTRUCTION = """You are the cartographer of a web scraping system.
Your job is to create stable, reliable element maps that can be replayed later without you.

RULES:
- Prioritize IDs and data-* attributes over CSS classes
- Always provide multiple fallback strategies
- Identify structural containers before individual items
- Use semantic snake_case names (e.g. "job_card", not "div_123")
- Return valid JSON only"""


def build_discovery_prompt(url: str, html: str, structure_summary: str) -> str:
    """Build the discovery prompt for one page snapshot."""
    return f"""You are analyzing the structure of a web page to build a durable element map.

TARGET URL: {url}

YOUR MISSION:
Identify ALL key interactive and structural elements on this page.

═══════════════════════════════════════════════════════════════
CRITICAL HEURISTICS
═══════════════════════════════════════════════════════════════

1. CONTAINERS FIRST: If you see repeated patterns (e.g. 10+ similar items), you MUST identify:
   - The parent container holding them (name it "list_container" or "items_wrapper")
   - The scrollable area if pagination exists

2. INDIVIDUAL CLICKABLE ITEMS: Do NOT group similar links or buttons.
   - Each navigation link must be identified separately (e.g. "nav_new", "nav_past", "nav_comments")
   - Each button must have its own entry with its specific purpose
   - Generic names like "navigation_link" are NOT acceptable

3. MULTIPLE STRATEGIES REQUIRED: For EVERY element, provide at least 2 distinct strategies,
   ordered by stability:
   - Primary: "selector" (CSS) or "data_attr" (e.g. data-testid="job-item")
   - Backup: "xpath", "aria" (e.g. aria-label="Next page") or "text_content"

4. STABILITY:
   - Prefer id, data-*, role and aria-label over class names
   - For DYNAMIC/HASHED classes (e.g. _coName_abc123, styles__Name-sc-xyz),
     use wildcards like [class*="coName"] instead of the full class

5. ELEMENT PRIORITY:
   - Structural containers (lists, grids, scrollable areas)
   - Individual navigation elements (each link/button separately)
   - Interactive components (forms, inputs, buttons)
   - Content elements (titles, text, images)

6. CONFIDENCE: confidence_score in [0, 1], high only when the primary strategy is unique and stable.

═══════════════════════════════════════════════════════════════
HTML SNAPSHOT (cleaned, truncated)
═══════════════════════════════════════════════════════════════
```html
{html}
```

═══════════════════════════════════════════════════════════════
STRUCTURE SUMMARY
═══════════════════════════════════════════════════════════════
{structure_summary}

═══════════════════════════════════════════════════════════════
YOUR RESPONSE
═══════════════════════════════════════════════════════════════

Return ONLY a JSON object with "domain", "page_type" and "elements".
Every element name must be unique on the page."""
