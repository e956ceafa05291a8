"""
Domain package.

- models: Dataclasses and enums for templates, trackers, entries, grants,
  observation links, reminders, share links and context overlays.
- schemas: Pydantic request/response models for the HTTP surface.
"""
