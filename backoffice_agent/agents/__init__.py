# =============================================================================
# Agents Package — Turn Execution & Entry Points
# =============================================================================
#   - executor.py: LangGraph graph running one turn: gather context,
#     knowledge and history → assemble prompt and enforce the input token
#     budget → invoke the model → post-process, account, persist
#   - service.py: AgentService, the coroutines the controller layer calls
#     (agent CRUD, system prompt versions, turns, knowledge ingestion)
# =============================================================================
