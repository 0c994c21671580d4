"""
AI orchestration services package.

The model client, prompt templates and the orchestration service that turns
case data into versioned summaries, recommendations and analyses. Every model
call, successful or not, is recorded as an AIInteraction.
"""
