"""Iterative LLM refinement sessions.

Each session runs on its own worker thread which generates an artifact,
extracts JSON from the response, optionally asks the model to critique the
result, and feeds any problems back into the next prompt until the artifact
validates or the iteration budget runs out. Progress is published as typed
events on a bounded per-session channel that SSE subscribers drain.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import InvalidRequestError, InvalidTransitionError, NotFoundError
from .llm import LlmClient, extract_json
from .models import Project, RefinementEvent, RefinementIteration, RefinementSession, utcnow
from .specforge_logging import log_error_with_context, log_refinement_event
from .storage import Repository

logger = logging.getLogger("specforge.refinement")

EVENT_QUEUE_SIZE = 100
STREAM_TIMEOUT = 300.0
PUBLISH_TIMEOUT = 5.0
# finished channels nobody subscribed to are kept this long
CHANNEL_RETENTION = STREAM_TIMEOUT
TERMINAL_EVENT_TYPES = ("SUCCESS", "ERROR")
POLL_INTERVAL = 0.1
MIN_CRITIQUE_SCORE = 7

RAW_JSON_INSTRUCTION = (
    "\n\nCRITICAL ERROR: The previous response was not valid JSON. "
    "Return ONLY the raw JSON object with no markdown fences and no commentary."
)

SYSTEM_PROMPTS: Dict[str, str] = {
    "contract": (
        "You are a senior API architect. Produce a complete OpenAPI 3.1.0 document as JSON with the "
        "top-level 'openapi', 'info', 'paths' and 'components' fields; put every request and response "
        "schema under 'components/schemas' and reference it from the operations. Also list the environment "
        "variables or secrets the API needs. Respond with a JSON object holding 'contract' (the OpenAPI "
        "document) and 'variables' (an array of objects with 'name', 'description' and 'required')."
    ),
    "variable": (
        "You are a DevOps engineer. Work out the environment variables, secrets and configuration flags the "
        "requirements call for. Respond with a JSON object whose single field 'variables' is an array of "
        "objects with 'name', 'description', 'required' and 'default_value'. Respond with JSON only."
    ),
    "context": (
        "You are a product manager and technical architect. Analyse the input and write a detailed business "
        "context and technical context. Respond with JSON holding 'business_context' and 'technical_context'."
    ),
    "roadmap_item": (
        "You are a product manager. Draft a complete roadmap item from the input. Respond with JSON holding "
        "'title', a detailed 'description', 'business_context', 'technical_context', 'type' "
        "(EPIC/FEATURE/TASK/BUGFIX/REFACTOR) and 'priority' (LOW/MEDIUM/HIGH/CRITICAL)."
    ),
    "requirement": (
        "You are a technical lead. Derive detailed technical requirements from the input. Respond with a JSON "
        "object holding 'requirements' (objects with 'title', 'acceptance_criteria', boolean 'testable' and "
        "'priority' LOW/MEDIUM/HIGH) and 'variables' (objects with 'name', 'description', 'required', "
        "'default_value')."
    ),
    "schema_suggestion": (
        "You are a senior API architect. Using the roadmap item (title, description) and the partial contract "
        "in the context, write the requested JSON Schema. It must suit its role: an error schema describes "
        "error codes and messages rather than repeating the input. Respond with JSON whose single field "
        "'schema' is the JSON Schema object."
    ),
    "validation_rule": (
        "You are a security and quality engineer. From the project context, propose validation rules that "
        "protect variables, contracts and business logic. Respond with a JSON object whose single field "
        "'rules' is an array of objects with 'name', 'rule_type' (REGEX, RANGE, ENUM or CUSTOM), "
        "'description' and 'rule_config' (type-specific parameters such as {\"pattern\": \"^v.+\"} or "
        "{\"min\": 0, \"max\": 100}). Respond with JSON only."
    ),
}
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Produce the requested artifact as JSON."

CRITIQUE_PROMPT = """You are a lead security architect. Review the generated artifact below.

<artifact>
{artifact}
</artifact>

Look for missing schema elements or constraints, ambiguous definitions, weak validation rules,
security risks (hardcoded values, missing auth scopes, injection points) and logical inconsistencies.

Respond with raw JSON only, in exactly this shape:
{{
  "score": <integer 1-10, 10 is perfect>,
  "ambiguity_flags": [],
  "missing_constraints": [],
  "weak_validations": [],
  "security_concerns": [],
  "improvement_suggestions": []
}}
Every point that lowers the score must appear in one of the lists."""

CRITIQUE_FINDINGS = (
    ("ambiguity_flags", "Ambiguity"),
    ("missing_constraints", "Missing Constraints"),
    ("weak_validations", "Weak Validations"),
    ("security_concerns", "Security Concerns"),
    ("improvement_suggestions", "Improvement Suggestions"),
)


def system_prompt_for(target_type: str) -> str:
    return SYSTEM_PROMPTS.get(target_type, DEFAULT_SYSTEM_PROMPT)


def build_initial_prompt(target_type: str, prompt: str, context_data: Optional[Dict[str, Any]]) -> str:
    text = f"{system_prompt_for(target_type)}\n\nTask: {prompt}"
    if context_data:
        text += f"\n\nContext:\n{json.dumps(context_data, default=str)}"
    return text


def build_feedback_prompt(target_type: str, errors: List[str], critique: Optional[Dict[str, Any]]) -> str:
    text = (f"{system_prompt_for(target_type)}\n\nPrevious attempt failed validation or self-critique:\n"
            f"Errors: {errors}\n\n")
    if critique:
        text += "### AI Self-Critique Findings:\n"
        for key, label in CRITIQUE_FINDINGS:
            if critique.get(key):
                text += f"- {label}: {critique[key]}\n"
        text += "\n"
    return text + "Please address all the issues listed above and regenerate the JSON artifact."


class EventChannel:
    """Bounded single-producer/single-consumer event queue.

    A full buffer makes the worker wait up to ``put_timeout`` for the reader.
    After that a progress event is dropped; a terminal event evicts the oldest
    buffered one instead, so the stream always ends with the outcome.
    """

    def __init__(self, maxsize: int = EVENT_QUEUE_SIZE, put_timeout: float = PUBLISH_TIMEOUT):
        self._queue: "queue.Queue[RefinementEvent]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self.put_timeout = put_timeout
        self.dropped = 0
        self.closed_at: Optional[float] = None

    def publish(self, event: RefinementEvent) -> bool:
        if self._closed.is_set():
            return False
        try:
            self._queue.put(event, timeout=self.put_timeout)
            return True
        except queue.Full:
            pass

        self.dropped += 1
        if event.type not in TERMINAL_EVENT_TYPES:
            logger.warning(f"Refinement event queue full; dropped {event.type} event")
            return False
        while True:
            try:
                self._queue.put_nowait(event)
                break
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
        logger.warning("Refinement event queue full; evicted the oldest event for the terminal one")
        return True

    def close(self) -> None:
        if self.closed_at is None:
            self.closed_at = time.monotonic()
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def iter_events(self, timeout: float = STREAM_TIMEOUT) -> Iterator[RefinementEvent]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                yield self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    return


class RefinementOrchestrator:
    """Start, drive, observe and approve refinement sessions."""

    def __init__(self, repository: Repository, client_provider: Callable[[str], LlmClient]):
        self.repository = repository
        self.client_provider = client_provider
        self._lock = threading.Lock()
        self._channels: Dict[str, EventChannel] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self.channel_retention = CHANNEL_RETENTION

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, project_id: str, target_type: str, prompt: str,
                      context_data: Optional[Dict[str, Any]] = None, max_iterations: int = 3,
                      roadmap_item_id: Optional[str] = None, run_async: bool = True) -> RefinementSession:
        if not prompt:
            raise InvalidRequestError("prompt is required")
        if max_iterations < 1:
            raise InvalidRequestError("max_iterations must be at least 1")
        self.repository.require(Project, project_id)

        session = self.repository.save(RefinementSession(
            project_id=project_id,
            target_type=target_type,
            initial_prompt=prompt,
            context_data=context_data,
            roadmap_item_id=roadmap_item_id,
            max_iterations=max_iterations,
        ))
        channel = EventChannel()
        with self._lock:
            self._prune_channels()
            self._channels[session.id] = channel

        if run_async:
            worker = threading.Thread(target=self._run, args=(session, channel),
                                      name=f"specforge-refine-{session.id[:8]}", daemon=True)
            with self._lock:
                self._workers[session.id] = worker
            worker.start()
        else:
            self._run(session, channel)
        return session

    def get_session(self, session_id: str) -> RefinementSession:
        return self.repository.require(RefinementSession, session_id)

    def list_iterations(self, session_id: str) -> List[RefinementIteration]:
        return self.repository.list_refinement_iterations(session_id)

    def approve_session(self, session_id: str) -> RefinementSession:
        session = self.get_session(session_id)
        if session.status != "VALIDATED":
            raise InvalidTransitionError(session.status, "APPROVED")
        session.status = "APPROVED"
        session.updated_at = utcnow()
        self.repository.save(session)
        logger.info(f"Refinement session {session_id} approved")
        return session

    def wait(self, session_id: str, timeout: Optional[float] = None) -> None:
        with self._lock:
            worker = self._workers.get(session_id)
        if worker is not None:
            worker.join(timeout)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def events(self, session_id: str, timeout: float = STREAM_TIMEOUT) -> Iterator[RefinementEvent]:
        with self._lock:
            self._prune_channels()
            channel = self._channels.get(session_id)
        if channel is None:
            raise NotFoundError("session not active or found", details=session_id)
        return self._drain(session_id, channel, timeout)

    def _drain(self, session_id: str, channel: EventChannel, timeout: float) -> Iterator[RefinementEvent]:
        yield from channel.iter_events(timeout)
        if channel.closed:
            with self._lock:
                self._channels.pop(session_id, None)

    def _prune_channels(self) -> None:
        """Forget finished channels older than the retention window. Caller holds the lock."""
        now = time.monotonic()
        expired = [sid for sid, ch in self._channels.items()
                   if ch.closed_at is not None and now - ch.closed_at >= self.channel_retention]
        for sid in expired:
            del self._channels[sid]
        if expired:
            logger.debug(f"Dropped {len(expired)} unread refinement channels")

    def sse_stream(self, session_id: str, timeout: float = STREAM_TIMEOUT) -> Iterator[str]:
        return self._sse_frames(self.events(session_id, timeout))

    @staticmethod
    def _sse_frames(events: Iterator[RefinementEvent]) -> Iterator[str]:
        for event in events:
            yield f"data: {json.dumps(event.to_dict(), default=str)}\n\n"
        yield "event: done\ndata: {}\n\n"

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            workers = list(self._workers.values())
            channels = list(self._channels.values())
        for worker in workers:
            worker.join(timeout)
        for channel in channels:
            channel.close()
        with self._lock:
            self._workers.clear()
            self._channels.clear()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self, session: RefinementSession, channel: EventChannel) -> None:
        try:
            self._drive(session, channel)
        except Exception as e:
            log_error_with_context(e, {"operation": "refinement_worker", "session_id": session.id})
            self._finish(session, channel, "FAILED", "ERROR", f"Refinement worker crashed: {e}")
        finally:
            channel.close()
            with self._lock:
                self._workers.pop(session.id, None)

    def _publish(self, session: RefinementSession, channel: EventChannel, event_type: str, message: str,
                 data: Any = None) -> None:
        channel.publish(RefinementEvent(type=event_type, message=message,
                                        iteration=session.current_iteration, data=data))
        log_refinement_event(session.id, event_type, message, iteration=session.current_iteration)

    def _finish(self, session: RefinementSession, channel: EventChannel, status: str, event_type: str,
                message: str, data: Any = None) -> None:
        session.status = status
        session.updated_at = utcnow()
        self.repository.save(session)
        self._publish(session, channel, event_type, message, data)

    def _drive(self, session: RefinementSession, channel: EventChannel) -> None:
        self._publish(session, channel, "INFO", f"Starting refinement session for {session.target_type}...")
        try:
            client = self.client_provider(session.project_id)
        except Exception as e:
            self._finish(session, channel, "FAILED", "ERROR", f"Failed to get LLM client: {e}")
            return

        project = self.repository.get(Project, session.project_id)
        critique_enabled = project is not None and project.self_evaluation_enabled()
        prompt = build_initial_prompt(session.target_type, session.initial_prompt, session.context_data)

        for i in range(1, session.max_iterations + 1):
            session.current_iteration = i
            session.updated_at = utcnow()
            self.repository.save(session)
            self._publish(session, channel, "ITERATION_START", f"Starting iteration {i}/{session.max_iterations}")
            self._publish(session, channel, "STEP", "Generating artifact...")

            try:
                raw = client.generate(prompt)
            except Exception as e:
                self._finish(session, channel, "FAILED", "ERROR", f"LLM generation failed: {e}")
                return
            logger.debug(f"Refinement {session.id} iteration {i} raw response: {raw[:2000]}")

            record = RefinementIteration(session_id=session.id, iteration=i, prompt=prompt, raw_response=raw)
            try:
                artifact = extract_json(raw)
            except ValueError as e:
                record.validation_errors = [f"invalid JSON: {e}"]
                self.repository.save(record)
                self._publish(session, channel, "WARN",
                              "Failed to parse JSON response. Retrying with format instruction...")
                prompt += RAW_JSON_INSTRUCTION
                continue
            record.artifact = artifact

            errors: List[str] = []
            critique = None
            if critique_enabled:
                critique = self._critique(session, channel, client, artifact)
                if critique is not None and critique["score"] < MIN_CRITIQUE_SCORE:
                    errors.append(
                        f"AI Self-Critique flagged low score ({critique['score']}/10). "
                        f"Issues: {critique.get('improvement_suggestions', [])}"
                    )
            record.critique = critique
            record.validation_errors = errors
            self.repository.save(record)

            if not errors:
                session.result = artifact
                session.confidence = critique["score"] / 10.0 if critique is not None else 1.0
                self._finish(session, channel, "VALIDATED", "SUCCESS", "Validation passed!",
                             {"artifact": artifact, "evaluation": critique})
                return

            self._publish(session, channel, "INFO", f"Validation failed with {len(errors)} errors. Refining...")
            prompt = build_feedback_prompt(session.target_type, errors, critique)

        self._finish(session, channel, "FAILED", "ERROR", "Max iterations reached without validation success.")

    def _critique(self, session: RefinementSession, channel: EventChannel, client: LlmClient,
                  artifact: Any) -> Optional[Dict[str, Any]]:
        self._publish(session, channel, "STEP", "AI Self-Critique phase...")
        try:
            raw = client.generate(CRITIQUE_PROMPT.format(artifact=json.dumps(artifact, indent=2, default=str)))
            result = extract_json(raw)
            if not isinstance(result, dict):
                raise ValueError("critique is not a JSON object")
            score = max(1, min(10, int(result.get("score", 0))))
        except Exception as e:
            self._publish(session, channel, "WARN", f"Self-evaluation failed: {e}")
            return None

        critique: Dict[str, Any] = {"score": score}
        for key, _label in CRITIQUE_FINDINGS:
            value = result.get(key) or []
            critique[key] = [str(v) for v in value] if isinstance(value, list) else [str(value)]
        suggestions = critique["improvement_suggestions"]
        summary = suggestions[0] if suggestions else "No suggestions."
        self._publish(session, channel, "INFO", f"AI Score: {score}/10. {summary}")
        return critique
