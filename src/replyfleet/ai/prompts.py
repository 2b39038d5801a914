"""AI system prompts and heuristic reply texts."""

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly person chatting casually. Keep responses brief and "
    "natural. Match the tone of the conversation. Don't be overly formal or "
    "use excessive punctuation."
)

QUESTION_REPLY = "Let me check and get back to you!"
GREETING_REPLY = "Hey! What's up?"
THANKS_REPLY = "You're welcome!"

GREETING_TOKENS = ("hi", "hey", "hello", "yo", "sup")
