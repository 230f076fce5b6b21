"""Synchronization engine for apptsync."""

from apptsync.sync.credential_store import CredentialStore
from apptsync.sync.locks import KeyedLocks
from apptsync.sync.reconciliation import ReconciliationEngine
from apptsync.sync.conference import ConferenceProvisioner
