import asyncio
import logging
import time

logger = logging.getLogger("deepgram_stream")


class DeepgramStreamGuard:
	"""
	Reliability helper for one Deepgram capture attempt.
	Drops out-of-order results and reports a stalled recognizer once.
	"""

	def __init__(self, silence_sec: float, poll_sec: float = 1.0):
		self.silence_sec = max(0.5, float(silence_sec))
		self.poll_sec = max(0.05, float(poll_sec))
		self.last_event_ts = 0.0
		self.last_activity = time.monotonic()
		self._stopped = False

	def note_activity(self):
		self.last_activity = time.monotonic()

	def stop(self):
		self._stopped = True

	def is_in_order(self, start: float) -> bool:
		event_ts = float(start or 0.0)
		if event_ts < self.last_event_ts:
			logger.warning("Deepgram out-of-order result ignored | start=%.2f last=%.2f", event_ts, self.last_event_ts)
			return False
		self.last_event_ts = event_ts
		return True

	async def watchdog(self, on_stall):
		try:
			while not self._stopped:
				await asyncio.sleep(self.poll_sec)
				if self._stopped:
					break
				if time.monotonic() - self.last_activity > self.silence_sec:
					logger.info("[DG] No speech for %.1fs, ending capture attempt", self.silence_sec)
					self._stopped = True
					on_stall()
		finally:
			logger.debug("[DG] Watchdog terminated")
