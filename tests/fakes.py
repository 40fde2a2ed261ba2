"""Test doubles for the LLM provider contract."""

from typing import Any, Dict, List


class FakeChat:
    def __init__(self, handle: "FakeHandle", history: List[Dict[str, str]]):
        self.handle = handle
        self.history = list(history)

    def send(self, parts):
        return self.handle.provider.respond(self.handle.model_id, "chat", self.history, parts)


class FakeHandle:
    def __init__(self, provider: "FakeProvider", model_id: str):
        self.provider = provider
        self.model_id = model_id

    def generate(self, parts):
        return self.provider.respond(self.model_id, "generate", [], parts)

    def chat(self, history):
        return FakeChat(self, history)


class FakeProvider:
    """Scripted provider: ``responses`` maps model id to reply text or an exception."""

    def __init__(self, responses: Dict[str, Any] = None, default: Any = "Hello from the model"):
        self.responses = dict(responses or {})
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def create_model(self, model_id: str) -> FakeHandle:
        return FakeHandle(self, model_id)

    def respond(self, model_id, kind, history, parts):
        self.calls.append({"model": model_id, "kind": kind, "history": list(history), "parts": parts})
        outcome = self.responses.get(model_id, self.default)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def models_called(self) -> List[str]:
        return [c["model"] for c in self.calls]


class RateLimited(Exception):
    status_code = 429


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
