# =============================================================================
# Agents Package — LangGraph Project Assistant
# =============================================================================
#   - assistant.py: retrieve → assemble → answer → persist graph that
#     answers questions over a project's analyses and indexed snippets,
#     plus rule-based suggested questions
# =============================================================================
