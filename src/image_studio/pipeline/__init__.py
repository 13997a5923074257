"""Task decomposition, execution, and progress aggregation pipeline.

A submitted task is expanded into prompt variants, split into one sub-task per
(variant, style, model, batch index) combination, and each sub-task is executed
independently through a durable SQLite job queue. Parent task progress and
status are always recomputed from the full sub-task set after every sub-task
status change.
"""
