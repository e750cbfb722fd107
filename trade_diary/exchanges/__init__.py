"""
Exchange fill adapters.

Field mapping from exchange-native fill rows into RawFill. Authentication,
request signing, pagination and retry stay with the fetching collaborator.
"""
