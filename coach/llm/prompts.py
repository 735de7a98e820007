"""
LLM Prompts for Coach.

These prompts are used by the memory extraction service.
"""

MEMORY_DETECTION_SYSTEM = (
    "You classify coaching conversation messages for long-term memory. "
    "Respond with valid JSON only. Do not include any text outside of the JSON response."
)

MEMORY_DETECTION = """
Analyze this wellness coaching conversation message and determine if it contains information worth remembering for future coaching sessions.

Look for:
1. Personal preferences (workout types, dietary restrictions, preferred activities) - category: "preference"
2. Important personal information (health conditions, allergies, lifestyle) - category: "personal_info"
3. Significant context that might be referenced later (progress, life circumstances) - category: "context"
4. User instructions or coaching preferences - category: "instruction"
5. Goals the user is working towards - category: "goal"

Message: "{message}"

Previous context:
{history}

Respond with JSON:
{{
    "shouldRemember": boolean,
    "category": "preference|personal_info|context|instruction|goal",
    "importance": 0.0-1.0,
    "extractedInfo": "clean version of the information to remember",
    "keywords": ["keyword1", "keyword2"],
    "reasoning": "why this should/shouldn't be remembered"
}}
"""
