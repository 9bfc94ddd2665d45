"""
Live AI-to-AI "backrooms" conversation service.

Modules:
- config: Settings loaded from env / .env
- states: Message, ConversationState, ImageArtifact + turn/run enums
- store: JSON mirror of the live conversation
- personas / agents: character files and prompt assembly per persona
- llm / generator: LangChain chat sources with canned fallback
- images / gallery: [IMAGE: ...] side-channel and the scheduled gallery
- memory: per-persona long-term notes
- archive: hourly/daily/manual/emergency snapshots (local + GitHub)
- broadcast: SSE fan-out to viewers
- manager: turn scheduler (start/stop/reset)
- emergency: signal / crash hooks that flush a last snapshot
- api: FastAPI app wiring everything together
"""
