"""
Email sequences: multi-step nurture emails sent by a cron-driven processor.
"""
