import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from openai import OpenAI

from carematch.models import (
    ChatResponse,
    ChatTurn,
    ModelReply,
    ProviderProfile,
    SeekerProfile,
    ToolInvocation,
)
from carematch.services.entity_store import EntityStore
from carematch.services.errors import ArgumentParseError, CareMatchError, ModelCallError
from carematch.services.matching import (
    find_matching_providers,
    find_matching_seekers,
    is_provider_complete,
    is_seeker_complete,
    provider_missing_fields,
    seeker_missing_fields,
)
from carematch.services.query_builder import DynamicQuery, execute_dynamic_query
from carematch.services.tool_arguments import (
    coerce_float,
    coerce_text,
    extract_string_list,
    normalize_arguments,
)

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are a matchmaking assistant helping to connect care providers (caregivers) with care seekers (patients or their families).

The participant's email is already known and appears in the conversation. Use it as their identifier and DO NOT ask for it again.

For new participants, first determine whether they offer care (provider) or are looking for care (seeker).

Required information for providers:
- Experience and certifications
- Location
- Availability
- Specializations
- Rate expectations (hourly rate in dollars)

Required information for seekers:
- Care needs
- Location
- Schedule requirements
- Budget (hourly rate in dollars)
- Special requirements

Call store_provider or store_seeker as soon as you learn any of these details; you only need to pass the fields learned so far.
Once you have collected all required information:
- For providers: confirm their registration and offer to show matching seekers
- For seekers: show them matching providers immediately

Always maintain context from previous messages to avoid asking for information that was already provided.
"""

UNIDENTIFIED_REPLY = "Welcome to CareMatch! Please share your email address so I can keep track of your details."
FALLBACK_REPLY = (
    "I need a little more to go on. Are you offering care or looking for care, "
    "and where are you located?"
)
ERROR_REPLY = "Something went wrong on our side. Please try again."

MATCH_STATUSES = {"proposed", "accepted", "declined"}

_EMAIL_TRIM = "<>()[]{}\"',;:!?."


def _function_tool(name: str, description: str, properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


TOOL_CATALOG = [
    _function_tool(
        "store_provider",
        "Store or update the current participant's care provider profile. Pass only the fields you know.",
        {
            "name": {"type": "string", "description": "Provider's full name"},
            "experience": {"type": "string", "description": "Years of experience and background"},
            "location": {"type": "string", "description": "Provider's location, e.g. city and state"},
            "availability": {"type": "string", "description": "Availability schedule"},
            "specializations": {"type": "string", "description": "Areas of specialization"},
            "rate_expectations": {"type": "number", "description": "Hourly rate in dollars"},
            "certifications": {"type": "string", "description": "Professional certifications"},
        },
    ),
    _function_tool(
        "store_seeker",
        "Store or update the current participant's care seeker profile. Pass only the fields you know.",
        {
            "name": {"type": "string", "description": "Seeker's full name"},
            "care_needs": {"type": "string", "description": "Description of care needs"},
            "location": {"type": "string", "description": "Seeker's location, e.g. city and state"},
            "schedule_requirements": {"type": "string", "description": "Schedule requirements"},
            "budget": {"type": "number", "description": "Hourly budget in dollars"},
            "special_requirements": {"type": "string", "description": "Any special requirements"},
            "phone_number": {"type": "string", "description": "Contact phone number"},
        },
    ),
    _function_tool("list_providers", "List all registered care providers.", {}),
    _function_tool("list_seekers", "List all registered care seekers.", {}),
    _function_tool(
        "find_matching_providers",
        "Find providers matching a seeker's location and budget.",
        {"seeker_email": {"type": "string", "description": "Email of the seeker; defaults to the current participant"}},
    ),
    _function_tool(
        "find_matching_seekers",
        "Find seekers matching a provider's location and rate.",
        {"provider_email": {"type": "string", "description": "Email of the provider; defaults to the current participant"}},
    ),
    _function_tool(
        "execute_dynamic_query",
        "Execute a filtered, sorted query against one of the profile tables.",
        {
            "table": {"type": "string", "enum": ["providers", "seekers", "matches", "skills"]},
            "fields": {"type": "array", "items": {"type": "string"}},
            "filters": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "field": {"type": "string"},
                        "operator": {"type": "string"},
                        "value": {"type": "string"},
                    },
                },
            },
            "order_by": {"type": "string", "description": "Column name, optionally followed by DESC"},
            "limit": {"type": "integer"},
        },
        required=["table"],
    ),
    _function_tool(
        "add_skills",
        "Attach skill or capability tags to the current participant's profile.",
        {"arguments": {"type": "array", "items": {"type": "string"}}},
        required=["arguments"],
    ),
    _function_tool(
        "remove_skills",
        "Remove skill or capability tags from the current participant's profile.",
        {"arguments": {"type": "array", "items": {"type": "string"}}},
        required=["arguments"],
    ),
    _function_tool(
        "record_match",
        "Record a proposed, accepted or declined pairing between a provider and a seeker.",
        {
            "provider_email": {"type": "string"},
            "seeker_email": {"type": "string"},
            "status": {"type": "string", "enum": sorted(MATCH_STATUSES)},
        },
    ),
]


class CareMatchOrchestrator:
    """Runs one chat turn: log, ask the model, dispatch its tool call, log the reply."""

    def __init__(self, store: Optional[EntityStore] = None, client: Any = None) -> None:
        self.model = self._normalize_env_value(os.getenv("OPENAI_MODEL", "gpt-4o-mini")) or "gpt-4o-mini"
        self.timeout_seconds = self._read_float_env("MODEL_TIMEOUT_SECONDS", 30.0)
        self.max_history = self._read_int_env("MAX_HISTORY", 100)

        if client is None:
            api_key = self._load_openai_api_key()
            if api_key:
                client = OpenAI(api_key=api_key, timeout=self.timeout_seconds, max_retries=0)
            else:
                logger.warning("LLM disabled: set OPENAI_API_KEY (or OPENAI_API_KEY_FILE).")
        self.client = client

        if store is None:
            default_db_path = str(Path(__file__).resolve().parents[2] / "data" / "carematch.sqlite3")
            store = EntityStore(db_path=os.getenv("CAREMATCH_DB_PATH", default_db_path))
        self.store = store

        self._object_tools: Dict[str, Callable[[str, Dict[str, Any]], str]] = {
            "store_provider": self._tool_store_provider,
            "store_seeker": self._tool_store_seeker,
            "list_providers": self._tool_list_providers,
            "list_seekers": self._tool_list_seekers,
            "find_matching_providers": self._tool_find_matching_providers,
            "find_matching_seekers": self._tool_find_matching_seekers,
            "execute_dynamic_query": self._tool_execute_dynamic_query,
            "record_match": self._tool_record_match,
        }
        self._list_tools: Dict[str, Callable[[str, List[str]], str]] = {
            "add_skills": self._tool_add_skills,
            "remove_skills": self._tool_remove_skills,
        }

    @property
    def llm_available(self) -> bool:
        return self.client is not None

    @staticmethod
    def _normalize_env_value(value: str) -> str:
        normalized = value.strip()
        if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in {"'", '"'}:
            normalized = normalized[1:-1].strip()
        return normalized

    def _load_openai_api_key(self) -> str:
        api_key = self._normalize_env_value(os.getenv("OPENAI_API_KEY", ""))

        if not api_key:
            key_file = self._normalize_env_value(os.getenv("OPENAI_API_KEY_FILE", ""))
            if key_file:
                try:
                    api_key = self._normalize_env_value(Path(key_file).read_text(encoding="utf-8"))
                except OSError:
                    logger.warning("OPENAI_API_KEY_FILE is set but unreadable.")

        if api_key.lower() in {"replace-with-openai-key", "your-openai-api-key"}:
            return ""
        return api_key

    @staticmethod
    def _read_float_env(name: str, default: float) -> float:
        try:
            value = float(os.getenv(name, str(default)))
        except ValueError:
            return default
        return value if value > 0 else default

    @staticmethod
    def _read_int_env(name: str, default: int) -> int:
        try:
            value = int(os.getenv(name, str(default)))
        except ValueError:
            return default
        return value if value > 0 else default

    # Identification

    @staticmethod
    def detect_email(text: str) -> Optional[str]:
        for token in text.split():
            if "@" not in token:
                continue
            candidate = token.strip(_EMAIL_TRIM)
            local, _, domain = candidate.partition("@")
            if local and domain:
                return candidate.lower()
        return None

    def resolve_email(self, message: str, email: Optional[str] = None) -> Optional[str]:
        explicit = (email or "").strip().lower()
        if explicit:
            return explicit
        return self.detect_email(message)

    def participant_stage(self, email: Optional[str]) -> str:
        if not email:
            return "unidentified"
        provider = self.store.find_provider(email)
        seeker = self.store.find_seeker(email)
        if (provider and is_provider_complete(provider)) or (seeker and is_seeker_complete(seeker)):
            return "complete"
        if provider or seeker:
            return "profile_building"
        return "identified"

    # Turn handling

    def handle_message(self, message: str, email: Optional[str] = None) -> ChatResponse:
        message = self._safe_text(message, max_len=4000)
        resolved = self.resolve_email(message, email)
        if not resolved:
            return ChatResponse(answer=UNIDENTIFIED_REPLY, status="unidentified", stage="unidentified")
        if not message:
            # Nothing was said; leave the log and the model untouched.
            return self._build_response(resolved, FALLBACK_REPLY, "ok", None)

        started = time.monotonic()
        tool_name: Optional[str] = None
        answer = ERROR_REPLY
        status = "ok"
        try:
            if not self.store.has_conversation(resolved):
                self.store.append_conversation_entry(resolved, "system", f"Participant email: {resolved}")
            self.store.append_conversation_entry(resolved, "user", message)

            reply = self._call_model(self._build_transcript(resolved))
            tool_name = reply.tool_call.name if reply.tool_call else None
            replies = self._apply_reply(resolved, reply)
            for text in replies:
                self.store.append_conversation_entry(resolved, "assistant", text)
            answer = "\n\n".join(replies)
        except ArgumentParseError as exc:
            status = "error"
            logger.exception("Unparseable arguments for tool %s: raw=%r", tool_name, exc.raw_payload)
        except ModelCallError:
            status = "error"
            logger.exception("Model call failed for %s", resolved)
        except CareMatchError:
            status = "error"
            logger.exception("Turn failed for %s (tool=%s)", resolved, tool_name)

        self._emit_turn_telemetry(resolved, tool_name, status, started)
        return self._build_response(resolved, answer if status == "ok" else ERROR_REPLY, status, tool_name)

    def get_history(self, email: str, limit: Optional[int] = None) -> List[ChatTurn]:
        entries = self.store.load_conversation(email.strip().lower(), limit=limit)
        return [ChatTurn(role=entry.role, content=entry.content) for entry in entries]

    def _build_response(self, email: str, answer: str, status: str, tool_name: Optional[str]) -> ChatResponse:
        try:
            conversation = self.get_history(email, limit=20)
            stage = self.participant_stage(email)
        except CareMatchError:
            logger.exception("Could not load conversation state for %s", email)
            conversation = []
            stage = "identified"
        return ChatResponse(
            answer=answer,
            status=status,  # type: ignore[arg-type]
            email=email,
            stage=stage,  # type: ignore[arg-type]
            tool_name=tool_name,
            conversation=conversation,
        )

    def _emit_turn_telemetry(self, email: str, tool_name: Optional[str], status: str, started: float) -> None:
        payload = {
            "email": email,
            "tool": tool_name or "",
            "status": status,
            "latency_ms": int((time.monotonic() - started) * 1000),
        }
        logger.info("turn_telemetry=%s", json.dumps(payload, sort_keys=True))

    def _build_transcript(self, email: str) -> List[Dict[str, str]]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "system", "content": self._participant_note(email)},
        ]
        for entry in self.store.load_conversation(email, limit=self.max_history):
            messages.append({"role": entry.role, "content": entry.content})
        return messages

    def _participant_note(self, email: str) -> str:
        provider = self.store.find_provider(email)
        seeker = self.store.find_seeker(email)
        lines = [f"Participant email: {email}."]
        if provider:
            missing = provider_missing_fields(provider)
            if missing:
                lines.append(f"Provider profile is incomplete, still missing: {', '.join(missing)}.")
            else:
                lines.append("Provider profile is complete; offer to show matching seekers.")
        if seeker:
            missing = seeker_missing_fields(seeker)
            if missing:
                lines.append(f"Seeker profile is incomplete, still missing: {', '.join(missing)}.")
            else:
                lines.append("Seeker profile is complete; show matching providers.")
        if not provider and not seeker:
            lines.append("No profile yet; ask whether they offer care or are looking for care.")
        return " ".join(lines)

    # Model collaborator

    def _call_model(self, messages: List[Dict[str, str]]) -> ModelReply:
        if self.client is None:
            raise ModelCallError("language model client is not configured")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                tools=TOOL_CATALOG,
                timeout=self.timeout_seconds,
            )
        except Exception as exc:
            raise ModelCallError(f"model call failed: {exc}") from exc
        return self._parse_model_response(response)

    @staticmethod
    def _field(obj: Any, name: str) -> Any:
        if isinstance(obj, dict):
            return obj.get(name)
        return getattr(obj, name, None)

    def _parse_model_response(self, response: Any) -> ModelReply:
        choices = self._field(response, "choices") or []
        if not choices:
            return ModelReply()
        message = self._field(choices[0], "message")
        if message is None:
            return ModelReply()
        content = self._field(message, "content") or ""

        tool_call: Optional[ToolInvocation] = None
        tool_calls = self._field(message, "tool_calls") or []
        if tool_calls:
            if len(tool_calls) > 1:
                logger.info("Model returned %d tool calls; dispatching the first", len(tool_calls))
            function = self._field(tool_calls[0], "function")
            name = self._field(function, "name") if function is not None else None
            if name:
                tool_call = ToolInvocation(name=name, arguments=self._field(function, "arguments"))
        else:
            function_call = self._field(message, "function_call")
            name = self._field(function_call, "name") if function_call is not None else None
            if name:
                tool_call = ToolInvocation(name=name, arguments=self._field(function_call, "arguments"))
        return ModelReply(content=content if isinstance(content, str) else str(content), tool_call=tool_call)

    def _apply_reply(self, email: str, reply: ModelReply) -> List[str]:
        replies: List[str] = []
        if reply.tool_call:
            replies.append(self._dispatch_tool(email, reply.tool_call))
        if reply.content.strip():
            replies.append(reply.content.strip())
        if not replies:
            replies.append(FALLBACK_REPLY)
        return replies

    def _dispatch_tool(self, email: str, call: ToolInvocation) -> str:
        if call.name in self._list_tools:
            items = extract_string_list(call.arguments)
            return self._list_tools[call.name](email, items)
        handler = self._object_tools.get(call.name)
        if handler is None:
            logger.warning("Model requested unknown tool: %s", call.name)
            return FALLBACK_REPLY
        args = normalize_arguments(call.arguments)
        return handler(email, args)

    # Tools

    def _tool_store_provider(self, email: str, args: Dict[str, Any]) -> str:
        profile = ProviderProfile(
            email=email,
            name=coerce_text(args, "name"),
            experience=coerce_text(args, "experience"),
            location=coerce_text(args, "location"),
            availability=coerce_text(args, "availability"),
            specializations=coerce_text(args, "specializations"),
            rate_expectations=max(coerce_float(args, "rate_expectations"), 0.0),
            certifications=coerce_text(args, "certifications"),
        )
        stored = self.store.upsert_provider(profile)
        missing = provider_missing_fields(stored)
        if missing:
            return f"Saved your provider details. I still need your {self._human_join(missing)}."
        return "Successfully registered as a care provider. Would you like to see matching care seekers?"

    def _tool_store_seeker(self, email: str, args: Dict[str, Any]) -> str:
        profile = SeekerProfile(
            email=email,
            name=coerce_text(args, "name"),
            care_needs=coerce_text(args, "care_needs"),
            location=coerce_text(args, "location"),
            schedule_requirements=coerce_text(args, "schedule_requirements"),
            budget=max(coerce_float(args, "budget"), 0.0),
            special_requirements=coerce_text(args, "special_requirements"),
            phone_number=coerce_text(args, "phone_number"),
        )
        stored = self.store.upsert_seeker(profile)
        missing = seeker_missing_fields(stored)
        if missing:
            return f"Saved your care request. I still need your {self._human_join(missing)}."
        providers = find_matching_providers(self.store, email)
        return "Successfully registered as a care seeker.\n\n" + self._format_providers(
            providers, title="Matching providers", empty_text="No matching providers found yet."
        )

    def _tool_list_providers(self, email: str, args: Dict[str, Any]) -> str:
        return self._format_providers(
            self.store.list_providers(), title="Registered providers", empty_text="No providers registered yet."
        )

    def _tool_list_seekers(self, email: str, args: Dict[str, Any]) -> str:
        return self._format_seekers(
            self.store.list_seekers(), title="Registered seekers", empty_text="No seekers registered yet."
        )

    def _tool_find_matching_providers(self, email: str, args: Dict[str, Any]) -> str:
        target = self._target_email(args, "seeker_email", email)
        return self._format_providers(
            find_matching_providers(self.store, target),
            title="Matching providers",
            empty_text="No matching providers found.",
        )

    def _tool_find_matching_seekers(self, email: str, args: Dict[str, Any]) -> str:
        target = self._target_email(args, "provider_email", email)
        return self._format_seekers(
            find_matching_seekers(self.store, target),
            title="Matching seekers",
            empty_text="No matching seekers found.",
        )

    def _tool_execute_dynamic_query(self, email: str, args: Dict[str, Any]) -> str:
        rows = execute_dynamic_query(self.store, DynamicQuery.from_arguments(args))
        if not rows:
            return "No records matched that query."
        return json.dumps(rows, indent=2, default=str)

    def _tool_record_match(self, email: str, args: Dict[str, Any]) -> str:
        provider_email = self._target_email(args, "provider_email", email)
        seeker_email = self._target_email(args, "seeker_email", email)
        if provider_email == seeker_email:
            return "Please tell me which provider and which seeker should be paired."
        status = coerce_text(args, "status").lower()
        if status not in MATCH_STATUSES:
            status = "proposed"
        record = self.store.record_match(provider_email, seeker_email, status)
        return f"Recorded {record.status} match between {record.provider_email} and {record.seeker_email}."

    def _tool_add_skills(self, email: str, skills: List[str]) -> str:
        if not skills:
            return "No skills were provided."
        for skill in skills:
            self.store.add_skill(email, skill)
        return f"Added skills: {', '.join(skills)}."

    def _tool_remove_skills(self, email: str, skills: List[str]) -> str:
        if not skills:
            return "No skills were provided."
        for skill in skills:
            self.store.remove_skill(email, skill)
        return f"Removed skills: {', '.join(skills)}."

    # Formatting

    def _format_providers(self, providers: List[ProviderProfile], title: str, empty_text: str) -> str:
        if not providers:
            return empty_text
        blocks = [f"{title}:"]
        for provider in providers:
            lines = [f"- {provider.name or provider.email} ({provider.email})"]
            lines.extend(
                self._detail_lines(
                    [
                        ("Location", provider.location),
                        ("Rate", f"${provider.rate_expectations:.2f}/hour"),
                        ("Availability", provider.availability),
                        ("Experience", provider.experience),
                        ("Specializations", provider.specializations),
                        ("Certifications", provider.certifications),
                        ("Skills", ", ".join(self.store.get_skills(provider.email))),
                    ]
                )
            )
            blocks.append("\n".join(lines))
        return "\n".join(blocks)

    def _format_seekers(self, seekers: List[SeekerProfile], title: str, empty_text: str) -> str:
        if not seekers:
            return empty_text
        blocks = [f"{title}:"]
        for seeker in seekers:
            lines = [f"- {seeker.name or seeker.email} ({seeker.email})"]
            lines.extend(
                self._detail_lines(
                    [
                        ("Location", seeker.location),
                        ("Budget", f"${seeker.budget:.2f}/hour"),
                        ("Schedule", seeker.schedule_requirements),
                        ("Care needs", seeker.care_needs),
                        ("Special requirements", seeker.special_requirements),
                        ("Contact", seeker.phone_number),
                        ("Skills needed", ", ".join(self.store.get_skills(seeker.email))),
                    ]
                )
            )
            blocks.append("\n".join(lines))
        return "\n".join(blocks)

    @staticmethod
    def _detail_lines(details: List[Tuple[str, str]]) -> List[str]:
        return [f"  {label}: {value}" for label, value in details if value]

    @staticmethod
    def _human_join(fields: List[str]) -> str:
        labels = [name.replace("_", " ") for name in fields]
        if len(labels) == 1:
            return labels[0]
        return ", ".join(labels[:-1]) + " and " + labels[-1]

    @staticmethod
    def _target_email(args: Dict[str, Any], key: str, default: str) -> str:
        value = coerce_text(args, key).lower()
        return value if "@" in value else default

    def _safe_text(self, value: Any, default: str = "", max_len: int = 512) -> str:
        if value is None:
            return default
        text = str(value).strip()
        if not text:
            return default
        if len(text) > max_len:
            return text[:max_len]
        return text
