# CUI // SP-CTI
"""Post-review workflow: attribution hook, adherence tracking, tagging-miss detection."""
