"""Smart notification pipeline: activity triggers, context, decisions and feedback learning."""
