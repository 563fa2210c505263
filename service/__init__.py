"""
Service — HTTP adapter

Exposes the coverage engine to a map front-end:
- GET  /coverage/{kind}        zoom-gated coverage for a bbox
- GET  /click                  click resolution (hit list optional)
- GET  /sequences/{id}/images  ordered coordinates of a sequence
- DELETE /cache                drop the session sequence cache
"""
