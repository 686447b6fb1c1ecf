"""Storage Assistant — the chat widget backend for a storage-services website.

Architecture Overview
=====================

Each customer message runs through a small **LangGraph** pipeline
(``src/agent.py``) that fans out two Claude calls in parallel:

1. **extract_intent** — structured output that flags collection/delivery
   requests and pulls out name, email, phone, date and details.
2. **generate_reply** — a free-form answer using the FAQ entries stored in
   Airtable as a knowledge supplement.

The results are joined, the shown reply is chosen (a fixed "fill out the
form" prompt for service requests), and the exchange is logged to Airtable.

``src/orchestrator.py`` owns the per-session transcript and booking form.
When a service request is detected it pre-fills a booking draft and offers
the free hourly slots from Google Calendar.  Submitting the form creates the
record in Airtable (must succeed) and then books the calendar event (allowed
to fail).

Package Structure
-----------------
- ``src/agent.py`` — LangGraph turn pipeline
- ``src/orchestrator.py`` — ChatSession state machine and session registry
- ``src/models.py`` — Message, ServiceRequest, ExtractedIntent, BookingDraft
- ``src/config.py`` — Centralized configuration from environment variables
- ``src/prompts.py`` — Persona and extraction prompts with FAQ injection
- ``src/server.py`` — FastAPI application
- ``src/main.py`` — CLI chat interface
- ``src/services/`` — Airtable, Google Calendar and Claude clients, metrics
- ``src/api/`` — FastAPI routes and Pydantic schemas
"""
