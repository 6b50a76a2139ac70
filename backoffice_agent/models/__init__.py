# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Shapes of data crossing the pipeline boundary. These are SEPARATE from the
# database models (backoffice_agent/db/models.py):
#   - agent.py: AgentProfile, the detached agent snapshot a turn runs on
#   - requests.py: turn input, agent configuration, uploaded files
#   - responses.py: agent reply (sources, actions, usage), knowledge bases
# =============================================================================
