"""LLM Provider Gateway.

Turns an abstract "generate text from this prompt" request into concrete
HTTP calls against interchangeable LLM backends:
  - Provider Registry (per-backend strategies for headers, payloads, decoding)
  - Request Builder (credentials, guided decoding, multipart transcription)
  - Stream Decoder (incremental ``data:`` line parser with reasoning state)
  - Single-Call Executor (one streamed attempt, deltas forwarded live)
  - Batch / Transcription Executors (bounded fan-out, retry, provider fallback)
  - Fallback Controller (acyclic provider chain)
"""
