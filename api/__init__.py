"""PropelAI API - HTTP surface over the pipeline runtime"""
