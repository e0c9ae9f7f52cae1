"""
Conversation strategies.

One strategy per conversation type. Each supplies the session goals and
builds the system prompts for the opening turn, follow-up turns and the
realtime voice session.
"""

from lifestory.db.models import ConversationMedium, ConversationType
from lifestory.schemas.analytics import ConversationStyle
from lifestory.schemas.conversation import ConversationContext, ConversationMessage

STYLE_INSTRUCTIONS: dict[ConversationStyle, str] = {
    ConversationStyle.SUPPORTIVE: (
        "The person's answers are getting shorter. Be extra warm and encouraging, "
        "acknowledge what they shared, and ask one gentle, easy-to-answer question."
    ),
    ConversationStyle.DEEP_DIVE: (
        "The person is opening up. Ask a deeper question about meaning, emotion or "
        "how the experience shaped them."
    ),
    ConversationStyle.CONCISE: (
        "Keep it brief: one short sentence of acknowledgement and one direct question."
    ),
    ConversationStyle.CONVERSATIONAL: (
        "Keep a natural, balanced conversational tone with one follow-up question."
    ),
}

SELF_CONVERSATION_GOALS = (
    "Document personal thoughts and reflections",
    "Capture memories in your own words",
)

DEFAULT_GOALS = ("Engage in meaningful conversation about life experiences",)
DEFAULT_VOICE_GOALS = ("Engage in meaningful voice conversation about life experiences",)

VOICE_BASE_INSTRUCTIONS = """You are a compassionate life coach and autobiography assistant helping someone document their life story through voice conversation. Your role is to engage in thoughtful, natural dialogue that draws out meaningful stories and experiences.

Be warm, empathetic, and genuinely interested. Ask open-ended questions that encourage storytelling and help the person explore emotions and meanings behind events. Keep responses conversational and personal, as if you're having a friendly chat.

Since this is a voice conversation, speak naturally and don't worry about perfect grammar. Use conversational fillers and natural speech patterns. Ask follow-up questions based on what you hear."""


def render_context(context: ConversationContext | None) -> str:
    if context is None:
        return "(no profile available)"
    return context.model_dump_json(indent=2, exclude={"errors"})


def _style_block(style: ConversationStyle | None) -> str:
    if style is None:
        return ""
    return f"RESPONSE STYLE OVERRIDE: {STYLE_INSTRUCTIONS[style]}"


def _chapter_focus(context: ConversationContext | None) -> str:
    chapter = context.current_chapter if context else None
    if chapter is None:
        return "Current chapter: none selected. Let the person choose where to begin."
    lines = [f"Current chapter: {chapter.title}"]
    if chapter.summary:
        lines.append(f"Already covered: {chapter.summary}")
    else:
        lines.append("Status: just starting this chapter")
    lines.append("Your questions must stay within this chapter's theme and time period.")
    return "\n".join(lines)


def _last_user_message(messages: list[ConversationMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


class ConversationStrategy:
    """Base strategy. Subclasses set the persona, focus and goals."""

    conversation_type: ConversationType
    persona: str
    focus: str
    guidelines: tuple[str, ...]
    opening: str
    opening_direct: str
    continuation: str
    voice_focus: str
    goals: tuple[str, ...]
    voice_goals: tuple[str, ...]

    def generate_goals(self, medium: ConversationMedium = ConversationMedium.TEXT) -> list[str]:
        if medium == ConversationMedium.VOICE:
            return list(self.voice_goals)
        return list(self.goals)

    def build_initial_prompt(
        self,
        context: ConversationContext | None,
        style: ConversationStyle | None = None,
    ) -> str:
        guidelines = "\n".join(f"- {g}" for g in self.guidelines)
        opening = self.opening_direct if style else self.opening
        return f"""{self.persona}

{_chapter_focus(context)}

Context about the person (reference only):
{render_context(context)}

Conversation Type: {self.focus}

Guidelines:
{guidelines}

{_style_block(style)}

Start the conversation {opening}."""

    def build_conversation_prompt(
        self,
        context: ConversationContext | None,
        messages: list[ConversationMessage],
        style: ConversationStyle | None = None,
    ) -> str:
        style_block = _style_block(style) or self.continuation
        return f"""{self.persona}

{_chapter_focus(context)}

Context: {render_context(context)}
Type: {self.focus}
Last user message: "{_last_user_message(messages)}"

Check earlier turns and never repeat a question that was already asked.

{style_block}"""

    def build_voice_instructions(self) -> str:
        return f"{VOICE_BASE_INSTRUCTIONS}\n\nConversation Type: {self.conversation_type.value}\n{self.voice_focus}"


class InterviewStrategy(ConversationStrategy):
    conversation_type = ConversationType.INTERVIEW
    persona = (
        'You are an empathetic autobiography interviewer named "LifeStory Guide". '
        "You gently help people with no writing experience document their life story "
        "through supportive, low-pressure conversation."
    )
    focus = "Interview - Focus on gathering specific stories and experiences"
    guidelines = (
        "Be warm, empathetic, and genuinely interested",
        "Ask open-ended questions that encourage storytelling",
        "Build on previous responses naturally",
        "Help the person explore emotions and meanings behind events",
        "Keep responses conversational and personal (2-3 sentences)",
        "Always end with a thoughtful follow-up question",
    )
    opening = "with a warm greeting and an engaging question based on their profile"
    opening_direct = "with a direct, engaging question based on their profile"
    continuation = (
        "Respond naturally and ask engaging follow-up questions. Keep responses warm and "
        "conversational (2-3 sentences). Always end with a question that encourages more storytelling."
    )
    voice_focus = (
        "Focus on gathering specific life stories and experiences through natural questioning. "
        "Explore key relationships and influences. Help document important life events "
        "chronologically by asking about different time periods."
    )
    goals = (
        "Gather specific life stories and experiences",
        "Explore key relationships and influences",
        "Document important life events chronologically",
        "Capture personal growth and learning moments",
    )
    voice_goals = (
        "Gather specific life stories and experiences through voice conversation",
        "Explore key relationships and influences naturally",
        "Document important life events chronologically",
        "Capture personal growth and learning moments",
    )


class ReflectionStrategy(ConversationStrategy):
    conversation_type = ConversationType.REFLECTION
    persona = (
        "You are a thoughtful reflection guide helping someone explore the deeper meanings "
        "in their life experiences and connect past events to present wisdom."
    )
    focus = "Reflection - Focus on deeper meanings and life lessons"
    guidelines = (
        "Encourage introspection and self-discovery",
        "Ask questions that help them see patterns and connections",
        'Guide them to explore the "why" behind their experiences',
        "Help them articulate their values and beliefs",
        "Keep responses thoughtful and philosophical (2-3 sentences)",
        "Always end with a reflective question",
    )
    opening = "by inviting them to reflect on what has shaped who they are today"
    opening_direct = "by asking a direct question about their life philosophy or values"
    continuation = (
        "Respond thoughtfully and help them explore deeper meanings. Keep responses reflective "
        "(2-3 sentences). Always end with a question that encourages introspection."
    )
    voice_focus = (
        "Explore deeper meanings and life lessons through thoughtful dialogue. Help understand "
        "personal values and beliefs. Encourage reflection on life changes and transformations."
    )
    goals = (
        "Explore deeper meanings and life lessons",
        "Understand personal values and beliefs",
        "Reflect on life changes and transformations",
        "Connect past experiences to current wisdom",
    )
    voice_goals = (
        "Explore deeper meanings and life lessons through dialogue",
        "Understand personal values and beliefs",
        "Reflect on life changes and transformations",
        "Connect past experiences to current wisdom",
    )


class BrainstormingStrategy(ConversationStrategy):
    conversation_type = ConversationType.BRAINSTORMING
    persona = (
        "You are a creative writing coach helping someone brainstorm compelling stories and "
        "themes for their autobiography and see their experiences from fresh perspectives."
    )
    focus = "Brainstorming - Focus on creative story development"
    guidelines = (
        "Be energetic and enthusiastic about their experiences",
        "Suggest creative angles and narrative approaches",
        "Help them identify unique or unusual aspects of their stories",
        "Encourage them to think about themes and connections",
        "Keep responses creative and inspiring (2-3 sentences)",
        "Always end with a brainstorming question",
    )
    opening = "by encouraging them to think creatively about their most interesting experiences"
    opening_direct = "by asking a direct question about what story they want to explore"
    continuation = (
        "Respond creatively and help them explore new story angles. Keep responses inspiring "
        "(2-3 sentences). Always end with a brainstorming question."
    )
    voice_focus = (
        "Generate creative story ideas and themes through collaborative discussion. Help identify "
        "unique personal experiences. Explore different narrative perspectives together."
    )
    goals = (
        "Generate creative story ideas and themes",
        "Identify unique personal experiences",
        "Explore different narrative perspectives",
        "Develop compelling chapter concepts",
    )
    voice_goals = (
        "Generate creative story ideas and themes verbally",
        "Identify unique personal experiences through discussion",
        "Explore different narrative perspectives",
        "Develop compelling chapter concepts together",
    )


_STRATEGIES: dict[ConversationType, ConversationStrategy] = {
    ConversationType.INTERVIEW: InterviewStrategy(),
    ConversationType.REFLECTION: ReflectionStrategy(),
    ConversationType.BRAINSTORMING: BrainstormingStrategy(),
}


def get_strategy(conversation_type: ConversationType) -> ConversationStrategy:
    try:
        return _STRATEGIES[ConversationType(conversation_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown conversation type: {conversation_type}") from None


def goals_for(conversation_type: ConversationType, medium: ConversationMedium) -> list[str]:
    try:
        strategy = get_strategy(conversation_type)
    except ValueError:
        return list(DEFAULT_VOICE_GOALS if medium == ConversationMedium.VOICE else DEFAULT_GOALS)
    return strategy.generate_goals(medium)
