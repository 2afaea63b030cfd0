from chat_core.store.conversation_store import EMPTY_MESSAGES, ConversationStore

__all__ = ["ConversationStore", "EMPTY_MESSAGES"]
