"""User and staff facing texts. Never include internal error details here."""

from __future__ import annotations

SYSTEM_BUSY = "⚠️ The system is busy, please try again later."
RATE_LIMITED = "⚠️ You are sending messages too fast, please slow down."
VERIFY_RATE_LIMITED = "⚠️ Too many verification requests, please try again in 5 minutes."
CONVERSATION_CLOSED = "🚫 This conversation has been closed by an administrator."
REPAIR_BUSY = "❌ The system is busy, please try again later."

CHALLENGE_PROMPT = (
    "🛡️ *Human verification*\n\n{question}\n\n"
    "Tap the correct answer below. Your previous message will be delivered "
    "automatically once you pass."
)
CHALLENGE_PASSED = "✅ Verified"
CHALLENGE_PASSED_EDIT = "✅ *Verification passed*\n\nYou can now chat freely."
CHALLENGE_EXPIRED = "❌ This verification has expired, please send your message again."
CHALLENGE_INVALID = "❌ Invalid verification."
CHALLENGE_BAD_OPTION = "❌ Invalid option."
CHALLENGE_WRONG = "❌ Wrong answer."
CHALLENGE_ERROR = "⚠️ Something went wrong, please try again."
PENDING_DELIVERED = "📩 Your previous message has been delivered."
PENDING_FAILED = "⚠️ Automatic delivery failed, please send your message again."

STAFF_CLOSED = "🚫 *Conversation closed*"
STAFF_OPENED = "✅ *Conversation reopened*"
STAFF_RESET = "🔄 *Verification reset*"
STAFF_TRUSTED = "🌟 *User trusted permanently*"
STAFF_BANNED = "🚫 *User banned*"
STAFF_UNBANNED = "✅ *User unbanned*"
STAFF_CLEANUP_STARTED = "🔄 *Scanning for users to clean up...*"
STAFF_CLEANUP_FAILED = "❌ *Cleanup failed*, see logs for details."
STAFF_SETUP_ERROR = "⚠️ *Relay misconfigured*\n\n{detail}"

STAFF_INFO = (
    "👤 *User info*\n"
    "UID: `{user_id}`\n"
    "Topic ID: `{topic_id}`\n"
    "Title: {title}\n"
    "Verification: {verification}\n"
    "Ban status: {ban}\n"
    "Link: [open chat](tg://user?id={user_id})"
)
