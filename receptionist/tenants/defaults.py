"""Platform default phrase lists.

A tenant that leaves a list empty inherits the platform list; a tenant that
sets ``merge_platform_defaults`` gets the union of both.
"""

from __future__ import annotations

FILLER_WORDS: tuple[str, ...] = (
    "um", "umm", "uh", "uhh", "uh huh", "er", "erm", "ah", "hmm",
    "you know", "i mean", "kind of like", "basically",
)

# Acknowledgements that carry no content of their own.
AFFIRMATIVE_MICRO: tuple[str, ...] = (
    "yes", "yeah", "yep", "yup", "ok", "okay", "sure", "right", "correct",
    "alright", "all right", "sounds good", "got it", "mm hmm", "uh huh",
    "yes please", "please do", "perfect",
)

NEGATIVE_MICRO: tuple[str, ...] = ("no", "nope", "nah", "not really", "no thanks")

NEUTRAL_MICRO: tuple[str, ...] = ("hello", "hi", "hey", "thanks", "thank you", "hold on", "one sec")

DETECTION_TRIGGERS: dict[str, tuple[str, ...]] = {
    "wants_booking": (
        "schedule", "book", "appointment", "dispatch", "technician",
        "service call", "service visit", "send someone", "send somebody",
        "get someone", "get somebody", "send a tech", "get a tech",
        "need someone", "need somebody", "help me out", "come out",
        "come over", "come by", "fix it", "repair it", "look at it",
        "check it out", "set something up",
    ),
    "describes_problem": (
        "water leak", "leaking", "thermostat", "not cooling", "not cool",
        "not heating", "no heat", "no air", "won't turn", "won't start",
        "making noise", "making a noise", "making sound", "smell",
        "broken", "not working", "stopped working", "quit working",
        "problem is", "issue is", "blowing warm", "blowing hot", "frozen",
    ),
    "trust_concern": (
        "can you do", "can you handle", "can you fix", "are you able",
        "know what you're doing", "qualified", "sure you can",
        "is this going to work", "you guys any good", "licensed",
    ),
    "feels_ignored": (
        "you're not listening", "didn't listen", "you didn't hear",
        "you're ignoring", "you don't get it", "that's not what i said",
        "you missed", "i already told you", "i just said",
    ),
    "refused_slot": (
        "i don't want to", "not going to give", "don't want to share",
        "not comfortable", "rather not", "none of your business",
    ),
    "emergency": (
        "gas leak", "smell gas", "carbon monoxide", "smoke", "on fire",
        "fire", "sparking", "sparks", "burning smell", "flooding",
        "burst pipe", "emergency",
    ),
    "pricing": (
        "how much", "cost", "costs", "price", "pricing", "charge", "fee",
        "estimate", "quote", "rate", "rates", "expensive",
    ),
    "wants_human": (
        "talk to someone", "speak to someone", "speak to a person",
        "real person", "human", "transfer me", "manager", "supervisor",
        "representative", "operator",
    ),
    "wants_to_end": (
        "that's all", "that is all", "goodbye", "bye", "that's it for now",
        "wrong number", "never mind",
    ),
}

CONSENT_PHRASES: tuple[str, ...] = (
    "yes", "yeah", "yep", "sure", "go ahead", "book it", "please do",
    "let's do it", "let's schedule", "sounds good", "that works",
    "that's right", "that is right", "correct",
)

SLOT_PROMPTS: dict[str, str] = {
    "name": "Can I get your name, please?",
    "address": "What's the address where you need the service?",
    "problem": "Can you briefly describe what's going on?",
    "phone": "What's the best number to reach you at?",
    "time_window": "When would be a good time for us to come out?",
}
