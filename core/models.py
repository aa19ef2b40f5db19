"""
Database models for the MamaCare client.

The client persists a handful of string key/value pairs (bearer token,
serialized user profile, onboarding flag, caches written by older app
versions).  They live in a single flat table so that the credential
store can enumerate and bulk-remove them the same way the mobile
key-value storage does.
"""
from __future__ import annotations

from django.db import models


class StoredItem(models.Model):
    """One persisted key of the on-device credential store.

    Keys are case-sensitive and unique; values are opaque strings
    (JSON documents are serialized by the caller).
    """
    key = models.CharField(max_length=255, primary_key=True)
    value = models.TextField()
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['key']

    def __str__(self) -> str:
        return self.key
