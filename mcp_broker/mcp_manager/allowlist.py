"""
Allowlist — разовые разрешения на автозапуск инструментов.

Пользователь может разрешить инструмент до конца разговора,
не меняя сохранённый конфиг. Разрешения копятся в памяти процесса;
число помнимых разговоров ограничено (LRU), самые давние вытесняются.
"""

from collections import OrderedDict

from loguru import logger


DEFAULT_MAX_CONVERSATIONS = 256


class ConversationAllowlist:
    """conversation_id -> set квалифицированных имён инструментов."""

    def __init__(self, max_conversations: int = DEFAULT_MAX_CONVERSATIONS) -> None:
        self._max_conversations = max(1, max_conversations)
        self._allowed: OrderedDict[str, set[str]] = OrderedDict()

    def allow(self, tool_name: str, conversation_id: str) -> None:
        """Разрешает инструмент в разговоре (идемпотентно)."""
        allowed = self._allowed.get(conversation_id)
        if allowed is None:
            allowed = set()
            self._allowed[conversation_id] = allowed
        self._allowed.move_to_end(conversation_id)

        if tool_name not in allowed:
            allowed.add(tool_name)
            logger.info(f"Allowed {tool_name} for conversation {conversation_id}")

        while len(self._allowed) > self._max_conversations:
            evicted, _ = self._allowed.popitem(last=False)
            logger.debug(f"Evicted allowlist of conversation {evicted}")

    def is_allowed(self, tool_name: str, conversation_id: str) -> bool:
        allowed = self._allowed.get(conversation_id)
        if allowed is None:
            return False
        self._allowed.move_to_end(conversation_id)
        return tool_name in allowed

    def forget(self, conversation_id: str) -> bool:
        """Удаляет все разрешения разговора."""
        return self._allowed.pop(conversation_id, None) is not None

    def clear(self) -> None:
        self._allowed.clear()

    def __len__(self) -> int:
        return len(self._allowed)
