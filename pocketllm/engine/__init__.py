# On-device completion engine
#
# This package drives a local inference backend one token at a time and
# streams well-formed text back to the caller.
#
# Key components:
#   - backends/          Inference backend interface and implementations
#   - registry.py        Maps backend names to backend classes
#   - tokenizer.py       Chat-template rendering and buffer-retry tokenization
#   - context_window.py  Prompt truncation and generation budgeting
#   - batch.py           Reusable decode batch
#   - sampling.py        Chat and greedy samplers
#   - detokenizer.py     UTF-8 safe streaming detokenization
#   - session.py         Completion orchestrator
#   - prompting.py       Prompt composition and retry cascade
#   - chat_engine.py     Serialized async streaming on top of a Session
