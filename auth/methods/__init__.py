"""auth/methods/ -- Method facades: password, social providers, delegated platform.

Each facade turns raw input (password, OAuth callback, platform code) into a
VerifiedIdentity and hands it to the CallbackOrchestrator. No facade issues
credentials or touches the account store on its own.
"""
