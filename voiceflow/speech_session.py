"""Speech capture state machine.

``RecognitionSession`` mediates between a continuous background recognizer
(wake word spotting), a foreground recognizer (utterance capture) and manual
text entry when voice is unavailable (demo mode).

Every recognizer callback, timer and public command is queued on one
``asyncio.Queue`` and handled by a single pump task, so ``state`` is only ever
mutated from one place. Each recognizer is tagged with a generation number;
events from a recognizer that is no longer the live one are dropped.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from voiceflow.recognition import (
    BENIGN_ERRORS,
    RecognitionEvent,
    RecognitionUnavailableError,
    Recognizer,
    RecognizerAlreadyStartedError,
    RecognizerFactory,
    error_message,
    normalize_event,
)
from voiceflow.wake_word import DEFAULT_WAKE_WORD, WakeWordDetector

logger = logging.getLogger(__name__)

NO_SPEECH_MESSAGE = "No speech detected. Please try again or type your message."

BACKGROUND = "background"
ACTIVE = "active"


class SessionState(str, Enum):
    IDLE = "idle"
    BACKGROUND_LISTENING = "background_listening"
    ACTIVE_LISTENING = "active_listening"
    PROCESSING = "processing"
    DEMO_MODE = "demo_mode"
    FAILED = "failed"


class RecognitionSession:
    """Owns at most one running recognizer and the capture workflow around it.

    Args:
        factory: ``factory(continuous, interim_results, emit, lang)`` returning
            a fresh ``Recognizer``. ``None`` means no speech support at all.
        analyzer: Async callable taking the captured text and returning a
            dict with a ``tasks`` list.
        wake_word: Phrase the background recognizer listens for.
        always_listening: Keep a background recognizer running when idle.
        switch_delay: Seconds between stopping one recognizer and starting
            the next.
        restart_delay: Seconds before background listening resumes.
        lang: BCP-47 language tag handed to every recognizer.
        on_complete: ``on_complete(task_count, result)`` after analysis.
        on_error: ``on_error(message)`` for user-facing failures.
        on_state_change: ``on_state_change(old, new)`` on every transition.
    """

    def __init__(self, factory: Optional[RecognizerFactory],
                 analyzer: Callable[[str], Awaitable[dict]],
                 wake_word: str = DEFAULT_WAKE_WORD,
                 always_listening: bool = True,
                 switch_delay: float = 0.3,
                 restart_delay: float = 1.2,
                 lang: str = "en-US",
                 on_complete: Callable[[int, dict], None] = None,
                 on_error: Callable[[str], None] = None,
                 on_state_change: Callable[[SessionState, SessionState], None] = None):
        self._factory = factory
        self._analyzer = analyzer
        self.detector = WakeWordDetector(wake_word)
        self.always_listening = always_listening
        self.switch_delay = switch_delay
        self.restart_delay = restart_delay
        self.lang = lang
        self.on_complete = on_complete
        self.on_error = on_error
        self.on_state_change = on_state_change

        self.state = SessionState.IDLE
        self.transcript = ""
        self.error: str | None = None
        self.active_role: str | None = None

        self._recognizer: Recognizer | None = None
        self._recognizer_gen: int | None = None
        self._generation = 0
        self._epoch = 0
        self._return_to_demo = False

        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue | None = None
        self._pump_task: asyncio.Task | None = None
        self._timers: set[asyncio.Task] = set()
        self._processing_task: asyncio.Task | None = None

    # ── Public API ─────────────────────────────────────────────────────

    async def start(self):
        """Mount the session: start the pump and begin listening if configured."""
        if self._pump_task is None:
            self._loop = asyncio.get_running_loop()
            self._queue = asyncio.Queue()
            self._pump_task = self._loop.create_task(self._pump())
        self._post("start")

    def begin_capture(self):
        """User tapped the microphone."""
        self._post("begin_capture")

    def confirm(self):
        """User finished speaking; process what was captured."""
        self._post("confirm")

    def retry_microphone(self):
        self._post("retry_microphone")

    def submit_text(self, text: str) -> bool:
        """Manual text entry. Rejected only while a transcript is being processed."""
        if self.state == SessionState.PROCESSING:
            logger.info("Ignoring manual text while processing")
            return False
        self._post("submit_text", text)
        return True

    def update_settings(self, always_listening: bool = None, wake_word: str = None):
        self._post("update_settings", always_listening, wake_word)

    def reset(self):
        self._post("reset")

    async def close(self):
        """Reset, then stop the pump."""
        if self._pump_task is None:
            return
        self._post("reset")
        await self._queue.join()
        self._pump_task.cancel()
        try:
            await self._pump_task
        except asyncio.CancelledError:
            pass
        self._pump_task = None

    async def drain(self):
        """Wait until the queue, timers and in-flight processing are all idle."""
        if self._queue is None:
            return
        while True:
            await self._queue.join()
            pending = [t for t in self._timers if not t.done()]
            if self._processing_task is not None and not self._processing_task.done():
                pending.append(self._processing_task)
            if not pending:
                if self._queue.empty():
                    return
                continue
            await asyncio.wait(pending)

    # ── Queue plumbing ─────────────────────────────────────────────────

    def _post(self, command: str, *args):
        if self._queue is None:
            raise RuntimeError("RecognitionSession.start() has not been awaited")
        item = (command, args)
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    async def _pump(self):
        while True:
            command, args = await self._queue.get()
            try:
                handler = getattr(self, f"_on_{command}")
                handler(*args)
            except Exception as e:
                logger.exception(f"Speech session command '{command}' failed: {e}")
            finally:
                self._queue.task_done()

    def _schedule(self, delay: float, command: str, *args):
        epoch = self._epoch

        async def fire():
            await asyncio.sleep(delay)
            self._post(command, epoch, *args)

        task = self._loop.create_task(fire())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _cancel_timers(self):
        for task in list(self._timers):
            task.cancel()

    # ── State helpers ──────────────────────────────────────────────────

    def _set_state(self, new: SessionState):
        old = self.state
        if old == new:
            return
        self.state = new
        logger.debug(f"Speech session {old.value} -> {new.value}")
        if self.on_state_change:
            self.on_state_change(old, new)

    def _report_error(self, message: str):
        self.error = message
        if self.on_error:
            self.on_error(message)

    def _start_role(self, role: str) -> bool:
        """Start a fresh recognizer for ``role``, stopping any other first."""
        self._release_recognizer()
        if self._factory is None:
            self._fail("unavailable")
            return False

        self._generation += 1
        gen = self._generation

        def emit(payload, gen=gen):
            self._post("event", gen, payload)

        try:
            recognizer = self._factory(True, True, emit, self.lang)
        except RecognitionUnavailableError as e:
            logger.warning(f"Speech recognition unavailable: {e}")
            self._fail("unavailable")
            return False

        self._recognizer = recognizer
        self._recognizer_gen = gen
        self.active_role = role
        try:
            recognizer.start()
        except RecognizerAlreadyStartedError:
            logger.debug(f"{role} recognizer already started")
        logger.info(f"Started {role} recognizer (gen {gen})")
        return True

    def _release_recognizer(self, abort: bool = False):
        recognizer, role = self._recognizer, self.active_role
        self._recognizer = None
        self._recognizer_gen = None
        self.active_role = None
        if recognizer is None:
            return
        if abort:
            recognizer.abort()
        else:
            recognizer.stop()
        logger.debug(f"{'Aborted' if abort else 'Stopped'} {role} recognizer")

    def _fail(self, code: str):
        """Terminal voice failure: fall back to typed input."""
        self._release_recognizer(abort=True)
        self._cancel_timers()
        self._epoch += 1
        self._set_state(SessionState.FAILED)
        message = error_message(code)
        logger.warning(f"Speech recognition failed ({code}); switching to demo mode")
        self._report_error(message)
        self._set_state(SessionState.DEMO_MODE)

    def _begin_background(self):
        self._set_state(SessionState.BACKGROUND_LISTENING)
        self._start_role(BACKGROUND)

    def _switch_to_active(self):
        # a pending background restart must not outlive this capture
        self._cancel_timers()
        self._epoch += 1
        self._release_recognizer()
        self.transcript = ""
        self._set_state(SessionState.ACTIVE_LISTENING)
        self._schedule(self.switch_delay, "start_active")

    def _finish_capture(self):
        self._release_recognizer()
        self._process(self.transcript)

    def _process(self, text: str):
        self._set_state(SessionState.PROCESSING)
        text = (text or "").strip()
        if not text:
            self._report_error(NO_SPEECH_MESSAGE)
            self._return_after_processing()
            return
        self._processing_task = self._loop.create_task(self._analyze(text, self._epoch))

    async def _analyze(self, text: str, epoch: int):
        try:
            result = await self._analyzer(text)
        except Exception as e:
            logger.error(f"Transcription analysis failed: {e}")
            self._post("processed", epoch, None, str(e))
        else:
            self._post("processed", epoch, result, None)

    def _return_after_processing(self):
        self.transcript = ""
        self.detector.reset()
        if self._return_to_demo:
            self._return_to_demo = False
            self._set_state(SessionState.DEMO_MODE)
        elif self.always_listening:
            self._set_state(SessionState.BACKGROUND_LISTENING)
            self._schedule(self.restart_delay, "start_background")
        else:
            self._set_state(SessionState.IDLE)

    # ── Command handlers (run on the pump only) ────────────────────────

    def _on_start(self):
        if self._factory is None:
            self._fail("unavailable")
        elif self.always_listening and self.state == SessionState.IDLE:
            self._begin_background()

    def _on_begin_capture(self):
        if self.state in (SessionState.IDLE, SessionState.BACKGROUND_LISTENING):
            self._switch_to_active()
        else:
            logger.debug(f"begin_capture ignored in state {self.state.value}")

    def _on_confirm(self):
        if self.state == SessionState.ACTIVE_LISTENING:
            self._cancel_timers()
            self._finish_capture()

    def _on_retry_microphone(self):
        if self.state not in (SessionState.DEMO_MODE, SessionState.FAILED):
            return
        self.error = None
        self._set_state(SessionState.ACTIVE_LISTENING)
        self.transcript = ""
        self._schedule(self.switch_delay, "start_active")

    def _on_submit_text(self, text: str):
        if self.state == SessionState.PROCESSING:
            logger.info("Ignoring manual text while processing")
            return
        self._cancel_timers()
        self._return_to_demo = self.state in (SessionState.DEMO_MODE, SessionState.FAILED)
        self._release_recognizer()
        self.transcript = text
        self._process(text)

    def _on_update_settings(self, always_listening: bool | None, wake_word: str | None):
        if wake_word is not None:
            self.detector.set_phrase(wake_word)
        if always_listening is None or always_listening == self.always_listening:
            return
        self.always_listening = always_listening
        if always_listening and self.state == SessionState.IDLE and self._factory is not None:
            self._begin_background()
        elif not always_listening and self.state == SessionState.BACKGROUND_LISTENING:
            self._cancel_timers()
            self._release_recognizer()
            self._set_state(SessionState.IDLE)

    def _on_reset(self):
        self._cancel_timers()
        if self._processing_task is not None and not self._processing_task.done():
            self._processing_task.cancel()
        self._processing_task = None
        self._epoch += 1
        self._release_recognizer(abort=True)
        self.transcript = ""
        self.error = None
        self._return_to_demo = False
        self.detector.reset()
        self._set_state(SessionState.IDLE)

    def _on_start_active(self, epoch: int):
        if epoch != self._epoch or self.state != SessionState.ACTIVE_LISTENING:
            return
        self._start_role(ACTIVE)

    def _on_start_background(self, epoch: int):
        if epoch != self._epoch or self.state != SessionState.BACKGROUND_LISTENING:
            return
        if not self.always_listening or self._recognizer is not None:
            return
        self._start_role(BACKGROUND)

    def _on_processed(self, epoch: int, result: dict | None, failure: str | None):
        if epoch != self._epoch or self.state != SessionState.PROCESSING:
            return
        self._processing_task = None
        if failure is not None:
            self._report_error(f"Failed to process transcription: {failure}")
        else:
            tasks = (result or {}).get("tasks") or []
            logger.info(f"Transcription processed: {len(tasks)} task(s) extracted")
            if self.on_complete:
                self.on_complete(len(tasks), result)
        self._return_after_processing()

    def _on_event(self, gen: int, payload):
        try:
            event = normalize_event(payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed recognizer payload: {e}")
            return
        if gen != self._recognizer_gen:
            logger.debug(f"Dropping stale {event.kind} event from gen {gen}")
            return
        self._handle_event(event)

    def _handle_event(self, event: RecognitionEvent):
        role = self.active_role
        if event.kind == "start":
            logger.debug(f"{role} recognizer started")
        elif event.kind == "result":
            if role == BACKGROUND and self.state == SessionState.BACKGROUND_LISTENING:
                if self.detector.process_transcript(event.transcript):
                    logger.info("Wake word detected, switching to active listening")
                    self._switch_to_active()
            elif role == ACTIVE and self.state == SessionState.ACTIVE_LISTENING:
                self.transcript = event.transcript
        elif event.kind == "error":
            if event.error in BENIGN_ERRORS:
                logger.debug(f"Ignoring benign recognizer error: {event.error}")
                return
            self._fail(event.error)
        elif event.kind == "end":
            if role == ACTIVE and self.state == SessionState.ACTIVE_LISTENING:
                self._finish_capture()
                return
            # the platform ended the background session on its own
            self._recognizer = None
            self._recognizer_gen = None
            self.active_role = None
            if self.state == SessionState.BACKGROUND_LISTENING and self.always_listening:
                logger.debug("Background recognizer ended, scheduling restart")
                self._schedule(self.restart_delay, "start_background")
