"""
Service layer

Pure computation and infrastructure, no lobby state transitions:
- DiceService: dice notation
- NamingService: display names and ids
- CredentialService: password hashing
- CharacterService: character sheet sanitizing
- CampaignLibrary: predefined campaigns
- RateLimitService: per-connection throttling
- MirrorService: best-effort persistence
"""
