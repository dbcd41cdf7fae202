"""Persona directive templates for the sales roleplay.

Every piece of text the buyer persona is primed with comes from here. The
templates are keyed by the closed set of channels (``b2b``/``b2c``) and
difficulty tiers (``easy``/``medium``/``hard``); nothing is inferred at runtime.
"""

from __future__ import annotations

from textwrap import dedent

from roleplay.schemas.session import Channel, Difficulty, PersonaConfiguration

CHANNEL_LABELS: dict[Channel, str] = {
    "b2b": "B2B",
    "b2c": "B2C",
}

DIFFICULTY_BEHAVIOR: dict[Difficulty, str] = {
    "easy": (
        "As the prospect you are receptive and cooperative. "
        "You reveal your pain points right away, making it easy to address your needs. "
        "Your objections are minimal and simple, providing a low-stress role-play experience."
    ),
    "medium": (
        "As the prospect you are neutral and cautious. "
        "You do not reveal your pain points upfront, instead framing the conversation "
        "as “shopping around” or “just ensuring you have the best options.” "
        "You provide decent pushback in the form of a couple of common objections, "
        "requiring the seller to navigate the conversation skillfully."
    ),
    "hard": (
        "As the prospect you are challenging and resistant, think of someone extremely "
        "skeptical (but still professional). "
        "You safeguard your pain points, requiring the seller to actively drag them out "
        "of you through probing questions and rapport-building. "
        "You provide multiple objections and may include a bit of snark or attitude while "
        "maintaining professionalism, testing the seller’s ability to remain composed "
        "and persuasive."
    ),
}

# Instructions passed to the speech synthesizer alongside each speakable unit.
TONE_DIRECTIVES: dict[Difficulty, str] = {
    "easy": (
        "Speak in a warm, open and friendly tone, like a buyer who is genuinely "
        "interested and happy to share what they need."
    ),
    "medium": (
        "Speak in a neutral, measured tone, like a buyer who is comparing options "
        "and not yet committed."
    ),
    "hard": (
        "Speak in a skeptical, questioning tone, like a buyer who is unsure and probing "
        "for more information before making a decision."
    ),
}

FEEDBACK_SECTIONS: tuple[str, ...] = (
    "5 things done well (with keywords + explanation)",
    "5 areas to improve (with keywords + explanation)",
    "Final score out of 10 with justification",
    "Tangible tips to improve future performance",
)

FEEDBACK_DIRECTIVE = (
    "Please now switch out of character and provide your detailed feedback "
    "as per the system prompt."
)

OPENING_LINE_TEMPLATE = (
    "Hi, thanks for taking the time to meet today. I’d love to learn more about "
    "your needs and see if our {product} might be a good fit."
)


def _buyer_role(config: PersonaConfiguration) -> str:
    if config.channel == "b2b":
        profile = config.b2b
        assert profile is not None
        return (
            f"You are playing the role of the buyer, who is/are {profile.persona} "
            f"at a/an {profile.industry} company.\n"
            f"I am a salesperson at a {profile.industry} company selling {config.product}."
        )

    profile = config.b2c
    assert profile is not None
    return (
        f"You are playing the role of the {profile.customer} buyer aged {profile.age} "
        f"with {profile.income} income group with focus on {profile.motivation}.\n"
        f"I am a salesperson at a {config.industry} company selling {config.product}."
    )


def build_system_directive(config: PersonaConfiguration) -> str:
    """Render the system prompt that primes the buyer persona and the coach."""

    label = CHANNEL_LABELS[config.channel]
    feedback_lines = "\n".join(f"- {section}" for section in FEEDBACK_SECTIONS)

    header = dedent(
        f"""\
        You are participating in a virtual {label} sales roleplay.
        This is a first time offline meeting."""
    )
    behavior = dedent(
        f"""\
        YOUR BEHAVIOR:
        - Engage with me in a realistic way.
        - Respond as a buyer until I ask for feedback.
        - When I ask for feedback, switch to a professional {label} sales coach.
        - As a coach, analyze the entire conversation and provide feedback in exactly this format:"""
    )

    return "\n\n".join(
        [
            header,
            _buyer_role(config),
            DIFFICULTY_BEHAVIOR[config.difficulty],
            f"{behavior}\n{feedback_lines}",
        ]
    )


def build_opening_line(config: PersonaConfiguration) -> str:
    """Return the scripted salesperson opener that seeds every conversation."""

    return OPENING_LINE_TEMPLATE.format(product=config.product)


def tone_directive(difficulty: Difficulty) -> str:
    return TONE_DIRECTIVES[difficulty]


__all__ = [
    "FEEDBACK_DIRECTIVE",
    "FEEDBACK_SECTIONS",
    "build_opening_line",
    "build_system_directive",
    "tone_directive",
]
