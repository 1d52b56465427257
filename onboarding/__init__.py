"""
onboarding — multi-step onboarding wizard.

Provides:
  • Canonical step order, skippable / gated steps
  • Per-step payload validation
  • Persisted, resumable progress (``OnboardingTracker``)
  • ``OnboardingService`` façade answering "what should this user see next"
  • Business-type catalog used to seed default categories
"""
