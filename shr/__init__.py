"""Single-Host Reconciler (SHR).

Keeps a host running one HTTP(S) service per project in the declared state:
 - a system identity and app/log directories
 - a sandboxed systemd unit
 - nginx sites (normal / maintenance / first-issuance HTTP-only)
 - a Let's Encrypt certificate requested through the ACME webroot
 - log rotation and an optional health probe that restarts the service

Every run re-derives the desired artifacts from the project descriptors and
overwrites what differs; nothing about the host is cached between runs.
"""
