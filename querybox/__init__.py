"""
querybox core package.

Modules
───────
models        — Pydantic data models (SuggestionCandidate, ChatSession, WebResult, ...)
store         — SQLite-backed key/value Local Store
history       — recents, browsing history, usage stats, blocklist, speed dials
categorizer   — host → workspace category table
gateway       — remote autocomplete providers with a TTL cache
aggregator    — candidate sourcing, dedup, scoring, capping, inline completion
suggestions   — SuggestionEngine: async ranking with single-flight remote calls
search        — web search (SearXNG / Firecrawl) for prompt augmentation
routing       — model routing heuristics and discovery filtering
completions   — chat-completion streaming and model discovery
sessions      — Chat Session Store
orchestrator  — AI response streaming state machine
"""
