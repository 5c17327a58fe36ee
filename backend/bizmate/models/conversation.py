"""Conversation history model."""

from sqlalchemy import Column, Integer, String, Text

from bizmate.models.base import BaseModel


class ConversationTurn(BaseModel):
    """A single user or assistant message in a user's chat history.

    Append-only; only the most recent turns per user are retained.

    Attributes:
        id: Autoincrement key, also the ordering of turns
        user_id: Owner of the conversation
        role: "user" or "assistant"
        content: Message text
    """

    __tablename__ = "conversation_turns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # user, assistant
    content = Column(Text, nullable=False)
