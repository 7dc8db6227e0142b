"""Step transitions for the guided setup dialogs.

session-setup: select_machine -> select_repo -> select_subfolder -> select_start_mode -> spawn
task-setup:    select_machine -> select_repo_mode -> select_repo -> await_description -> create

Each step shows a candidate list that is cached on the flow; the next button
press carries only an index into that cached list.
"""

import logging
from typing import Awaitable, Callable, Optional

from .callbacks import (
    SESSION_FLOW,
    TASK_FLOW,
    EngineResolver,
    decode_callback,
    encode_callback,
    engine_mode_value,
    parse_engine_mode,
)
from .flow_store import ConversationFlowStore
from .models import ConversationFlow, FlowKind, FlowReply, FlowStep
from .session_manager import build_session_command
from .transport import SshTransport, join_remote_path, list_remote_directory

logger = logging.getLogger(__name__)

NOT_UNDERSTOOD = "Sorry, I couldn't understand that choice."
NO_ACTIVE_DIALOG = "No active setup dialog here (it may have expired). Start again."
HERE = "here"
LABEL_LIMIT = 30

# (namespace, key) -> step the button belongs to
BUTTON_STEPS = {
    (SESSION_FLOW, "m"): FlowStep.SELECT_MACHINE,
    (SESSION_FLOW, "r"): FlowStep.SELECT_REPO,
    (SESSION_FLOW, "d"): FlowStep.SELECT_SUBFOLDER,
    (SESSION_FLOW, "s"): FlowStep.SELECT_START_MODE,
    (TASK_FLOW, "m"): FlowStep.SELECT_MACHINE,
    (TASK_FLOW, "rm"): FlowStep.SELECT_REPO_MODE,
    (TASK_FLOW, "r"): FlowStep.SELECT_REPO,
}
NAMESPACE_KINDS = {
    SESSION_FLOW: FlowKind.SESSION_SETUP,
    TASK_FLOW: FlowKind.TASK_SETUP,
}

StartSession = Callable[[ConversationFlow, str, str], Awaitable[str]]
CreateTask = Callable[[ConversationFlow, str], Awaitable[str]]


def _label(name: str) -> str:
    return name if len(name) <= LABEL_LIMIT else name[:LABEL_LIMIT - 1] + "…"


def choice_keyboard(names: list[str], namespace: str, key: str, here_label: Optional[str] = None) -> list:
    """Two buttons per row, indexed callbacks, optional trailing 'start here' row."""
    buttons = [(_label(name), encode_callback(namespace, key, str(i))) for i, name in enumerate(names)]
    rows = [buttons[i:i + 2] for i in range(0, len(buttons), 2)]
    if here_label:
        rows.append([(here_label, encode_callback(namespace, key, HERE))])
    return rows


def engine_keyboard(engines: dict[str, str]) -> list:
    """One row per engine, one button per start mode."""
    return [
        [
            (f"{engine} --ds", encode_callback(SESSION_FLOW, "s", engine_mode_value(short, "ds"))),
            (f"{engine} --cds", encode_callback(SESSION_FLOW, "s", engine_mode_value(short, "cds"))),
        ]
        for short, engine in engines.items()
    ]


class FlowEngine:
    """Drives ConversationFlows from button presses and text replies."""

    def __init__(
        self,
        store: ConversationFlowStore,
        transport: SshTransport,
        start_session: StartSession,
        create_task: Optional[CreateTask] = None,
        engine_resolver: Optional[EngineResolver] = None,
        engines: Optional[dict[str, str]] = None,
        default_engine: str = "itachi",
    ):
        self.store = store
        self.transport = transport
        self.start_session = start_session
        self.create_task = create_task
        self.engine_resolver = engine_resolver or EngineResolver(default_engine=default_engine)
        self.engines = engines or {"i": "itachi", "c": "itachic", "g": "itachig"}
        self.default_engine = default_engine

    # =========================================================================
    # Entry points
    # =========================================================================

    async def start_session_flow(
        self, thread_key: str, owner_ref: Optional[str] = None, chat_id: Optional[int] = None
    ) -> FlowReply:
        machines = self.transport.list_targets()
        if not machines:
            return FlowReply("No SSH targets configured.", finished=True)

        flow = ConversationFlow(
            kind=FlowKind.SESSION_SETUP,
            thread_key=thread_key,
            owner_ref=owner_ref,
            chat_id=chat_id,
            cached_machines=machines,
        )
        async with self.store.locked(thread_key):
            self.store.set(thread_key, flow, owner_ref)
        logger.info(f"Session setup started on thread {thread_key}")
        return FlowReply("Select a machine:", choice_keyboard(machines, SESSION_FLOW, "m"))

    async def start_task_flow(
        self, thread_key: str, task_name: str, owner_ref: Optional[str] = None, chat_id: Optional[int] = None
    ) -> FlowReply:
        machines = self.transport.list_targets()
        if not machines:
            return FlowReply("No SSH targets configured.", finished=True)

        flow = ConversationFlow(
            kind=FlowKind.TASK_SETUP,
            thread_key=thread_key,
            owner_ref=owner_ref,
            chat_id=chat_id,
            task_name=task_name,
            cached_machines=machines,
        )
        async with self.store.locked(thread_key):
            self.store.set(thread_key, flow, owner_ref)
        logger.info(f"Task setup '{task_name}' started on thread {thread_key}")
        return FlowReply(f"Task: {task_name}\nSelect a machine:", choice_keyboard(machines, TASK_FLOW, "m"))

    async def cancel(self, thread_key: str, owner_ref: Optional[str] = None) -> bool:
        async with self.store.locked(thread_key):
            return self.store.clear(thread_key, owner_ref)

    def awaiting_text(self, thread_key: str) -> bool:
        flow = self.store.get(thread_key)
        return flow is not None and flow.step == FlowStep.AWAIT_DESCRIPTION

    async def handle_callback(
        self, thread_key: str, data: str, owner_ref: Optional[str] = None
    ) -> Optional[FlowReply]:
        """
        Apply one button press to the thread's flow.

        Returns None for a press that should leave the message alone: a
        repeat while an earlier press of the same step is still being handled,
        or a button from a step the flow has already moved past.
        """
        token = decode_callback(data)
        if token is None or (token.namespace, token.key) not in BUTTON_STEPS:
            logger.warning(f"Unrecognised flow callback on thread {thread_key}: {data!r}")
            return FlowReply(NOT_UNDERSTOOD)

        async with self.store.locked(thread_key):
            flow = self.store.get(thread_key, owner_ref)
            if flow is None:
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            if self.store.is_expired(flow):
                self.store.clear(thread_key)
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            expected = BUTTON_STEPS[(token.namespace, token.key)]
            if flow.kind != NAMESPACE_KINDS[token.namespace]:
                logger.warning(f"Callback {data!r} does not belong to a {flow.kind.value} flow on thread {thread_key}")
                return FlowReply(NOT_UNDERSTOOD)
            if flow.in_flight or flow.has_passed(expected):
                logger.info(f"Ignoring repeated callback {data!r} at {flow.step.value} on thread {thread_key}")
                return None
            if flow.step != expected:
                logger.warning(
                    f"Stale callback {data!r} for {flow.kind.value} flow at {flow.step.value} on thread {thread_key}"
                )
                return FlowReply(NOT_UNDERSTOOD)
            flow.touch()
            flow.in_flight = True

        handler = getattr(self, f"_on_{token.namespace}_{token.key}")
        try:
            return await handler(flow, token.value)
        finally:
            flow.in_flight = False

    async def handle_text(self, thread_key: str, text: str, owner_ref: Optional[str] = None) -> Optional[FlowReply]:
        """Feed a text message to a flow waiting for one. None when no flow wants it."""
        async with self.store.locked(thread_key):
            flow = self.store.get(thread_key, owner_ref)
            if flow is None or flow.step != FlowStep.AWAIT_DESCRIPTION:
                return None
            if self.store.is_expired(flow):
                self.store.clear(thread_key)
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            self.store.clear(thread_key)

        description = text.strip()
        if not self.create_task:
            return FlowReply("Task creation is not configured.", finished=True)
        logger.info(f"Task setup '{flow.task_name}' finished on thread {thread_key}")
        message = await self.create_task(flow, description)
        return FlowReply(message, finished=True)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _pick(candidates: list[str], value: str) -> Optional[str]:
        try:
            index = int(value)
        except ValueError:
            return None
        if 0 <= index < len(candidates):
            return candidates[index]
        return None

    async def _candidate_dirs(self, machine: str, path: str) -> list[str]:
        dirs, error = await list_remote_directory(self.transport, machine, path)
        if error or not dirs:
            if error:
                logger.warning(f"Listing {path} on {machine} failed: {error}")
            return self.transport.known_projects(machine)
        return dirs

    async def _commit(self, flow: ConversationFlow, step: FlowStep, **fields) -> bool:
        """Write step results if the flow is still current and unmoved."""
        async with self.store.locked(flow.thread_key):
            if self.store.get(flow.thread_key) is not flow or flow.step != step:
                return False
            for name, value in fields.items():
                setattr(flow, name, value)
            return True

    def _start_mode_reply(self, flow: ConversationFlow) -> FlowReply:
        return FlowReply(
            f"Machine: {flow.machine}\nFolder: {flow.repo_path}\nSelect engine and mode:",
            engine_keyboard(self.engines),
        )

    # =========================================================================
    # session-setup
    # =========================================================================

    async def _on_sf_m(self, flow: ConversationFlow, value: str) -> FlowReply:
        machine = self._pick(flow.cached_machines, value)
        if machine is None:
            return FlowReply(NOT_UNDERSTOOD)

        base = self.transport.get_starting_dir(machine)
        dirs = await self._candidate_dirs(machine, base)

        if not dirs:
            if not await self._commit(flow, FlowStep.SELECT_MACHINE, machine=machine, base_path=base, repo_path=base):
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            flow.advance(FlowStep.SELECT_START_MODE)
            return self._start_mode_reply(flow)

        if not await self._commit(flow, FlowStep.SELECT_MACHINE, machine=machine, base_path=base, cached_dirs=dirs):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)
        flow.advance(FlowStep.SELECT_REPO)
        return FlowReply(
            f"Machine: {machine}\nSelect a repo in {base}:",
            choice_keyboard(dirs, SESSION_FLOW, "r", here_label="✅ Start here"),
        )

    async def _on_sf_r(self, flow: ConversationFlow, value: str) -> FlowReply:
        if value == HERE:
            if not await self._commit(flow, FlowStep.SELECT_REPO, repo_path=flow.base_path):
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            flow.advance(FlowStep.SELECT_START_MODE)
            return self._start_mode_reply(flow)

        repo = self._pick(flow.cached_dirs, value)
        if repo is None:
            return FlowReply(NOT_UNDERSTOOD)

        repo_path = join_remote_path(flow.base_path or "~", repo)
        subdirs, error = await list_remote_directory(self.transport, flow.machine, repo_path)
        if error:
            logger.debug(f"No subfolder listing for {repo_path} on {flow.machine}: {error}")

        if not await self._commit(flow, FlowStep.SELECT_REPO, repo_path=repo_path, project=repo, cached_dirs=subdirs):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)

        if not subdirs:
            flow.advance(FlowStep.SELECT_START_MODE)
            return self._start_mode_reply(flow)

        flow.advance(FlowStep.SELECT_SUBFOLDER)
        return FlowReply(
            f"Repo: {repo}\nSelect a subfolder or start here:",
            choice_keyboard(subdirs, SESSION_FLOW, "d", here_label="✅ Start here"),
        )

    async def _on_sf_d(self, flow: ConversationFlow, value: str) -> FlowReply:
        repo_path = flow.repo_path
        if value != HERE:
            subdir = self._pick(flow.cached_dirs, value)
            if subdir is None:
                return FlowReply(NOT_UNDERSTOOD)
            repo_path = join_remote_path(flow.repo_path, subdir)

        if not await self._commit(flow, FlowStep.SELECT_SUBFOLDER, repo_path=repo_path):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)
        flow.advance(FlowStep.SELECT_START_MODE)
        return self._start_mode_reply(flow)

    async def _on_sf_s(self, flow: ConversationFlow, value: str) -> FlowReply:
        engine_mode = parse_engine_mode(value, self.engines, self.default_engine)
        engine = engine_mode.engine or self.engine_resolver.resolve(flow.machine)
        engine_command = f"{engine} {engine_mode.mode}"
        prompt = f"Work in {flow.repo_path}"
        command = build_session_command(flow.repo_path, engine_command, prompt)

        async with self.store.locked(flow.thread_key):
            if self.store.get(flow.thread_key) is not flow:
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            self.store.clear(flow.thread_key)

        logger.info(f"Session setup finished on thread {flow.thread_key}: {flow.machine}:{flow.repo_path} ({engine_command})")
        message = await self.start_session(flow, command, prompt)
        return FlowReply(message, finished=True)

    # =========================================================================
    # task-setup
    # =========================================================================

    async def _on_tf_m(self, flow: ConversationFlow, value: str) -> FlowReply:
        machine = self._pick(flow.cached_machines, value)
        if machine is None:
            return FlowReply(NOT_UNDERSTOOD)
        base = self.transport.get_starting_dir(machine)
        if not await self._commit(flow, FlowStep.SELECT_MACHINE, machine=machine, base_path=base):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)
        flow.advance(FlowStep.SELECT_REPO_MODE)
        return FlowReply(
            f"Machine: {machine}\nNew repo or existing one?",
            [[("🆕 New repo", encode_callback(TASK_FLOW, "rm", "new")),
              ("📁 Existing repo", encode_callback(TASK_FLOW, "rm", "existing"))]],
        )

    async def _on_tf_rm(self, flow: ConversationFlow, value: str) -> FlowReply:
        if value == "new":
            if not await self._commit(flow, FlowStep.SELECT_REPO_MODE, repo_mode="new", project=flow.task_name):
                return FlowReply(NO_ACTIVE_DIALOG, finished=True)
            flow.advance(FlowStep.AWAIT_DESCRIPTION)
            return FlowReply(f"New repo '{flow.task_name}'. Describe the task:")

        if value != "existing":
            return FlowReply(NOT_UNDERSTOOD)

        dirs = await self._candidate_dirs(flow.machine, flow.base_path or "~")
        if not dirs:
            return FlowReply(
                f"Couldn't list repos on {flow.machine}.",
                [[("🔄 Retry", encode_callback(TASK_FLOW, "rm", "existing")),
                  ("🆕 New repo", encode_callback(TASK_FLOW, "rm", "new"))]],
            )

        if not await self._commit(flow, FlowStep.SELECT_REPO_MODE, repo_mode="existing", cached_dirs=dirs):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)
        flow.advance(FlowStep.SELECT_REPO)
        return FlowReply(f"Select a repo on {flow.machine}:", choice_keyboard(dirs, TASK_FLOW, "r"))

    async def _on_tf_r(self, flow: ConversationFlow, value: str) -> FlowReply:
        repo = self._pick(flow.cached_dirs, value)
        if repo is None:
            return FlowReply(NOT_UNDERSTOOD)
        repo_path = join_remote_path(flow.base_path or "~", repo)
        if not await self._commit(flow, FlowStep.SELECT_REPO, project=repo, repo_path=repo_path):
            return FlowReply(NO_ACTIVE_DIALOG, finished=True)
        flow.advance(FlowStep.AWAIT_DESCRIPTION)
        return FlowReply(f"Repo: {repo}\nDescribe the task:")
