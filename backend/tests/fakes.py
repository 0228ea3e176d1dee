from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional


def _response(message: Any) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


def text_reply(content: str) -> SimpleNamespace:
    return _response(SimpleNamespace(role="assistant", content=content, tool_calls=None, function_call=None))


def tool_reply(name: str, arguments: Any, content: Optional[str] = None) -> SimpleNamespace:
    call = SimpleNamespace(id="call_1", type="function", function=SimpleNamespace(name=name, arguments=arguments))
    return _response(SimpleNamespace(role="assistant", content=content, tool_calls=[call], function_call=None))


def legacy_function_reply(name: str, arguments: Any) -> SimpleNamespace:
    function_call = SimpleNamespace(name=name, arguments=arguments)
    return _response(SimpleNamespace(role="assistant", content=None, tool_calls=None, function_call=function_call))


def empty_reply() -> SimpleNamespace:
    return text_reply("")


class ScriptedModelClient:
    """Stands in for the OpenAI client: ``client.chat.completions.create(**kwargs)``."""

    def __init__(self, responder: Callable[[Dict[str, Any]], Any]) -> None:
        self.calls: List[Dict[str, Any]] = []
        self._responder = responder
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self._responder(kwargs)

    @classmethod
    def always(cls, reply: Any) -> "ScriptedModelClient":
        return cls(lambda _kwargs: reply)

    @classmethod
    def sequence(cls, replies: List[Any]) -> "ScriptedModelClient":
        queue = list(replies)
        return cls(lambda _kwargs: queue.pop(0))

    @classmethod
    def failing(cls, exc: Exception) -> "ScriptedModelClient":
        def _raise(_kwargs: Dict[str, Any]) -> Any:
            raise exc

        return cls(_raise)


def last_user_message(kwargs: Dict[str, Any]) -> str:
    for message in reversed(kwargs["messages"]):
        if message["role"] == "user":
            return message["content"]
    return ""
