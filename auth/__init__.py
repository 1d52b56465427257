"""
auth — User account module.

Provides:
  • Signed bearer token creation & verification
  • Password hashing (bcrypt)
  • Single-use email verification / password reset tokens
  • Register / Login / account API routes
  • ``get_current_user_id`` FastAPI dependency
"""
