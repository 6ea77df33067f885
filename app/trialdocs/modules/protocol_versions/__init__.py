"""
Protocol versions module.

- A DocumentMaster is one named protocol document within a trial (optionally a site)
- Each uploaded file becomes a ProtocolVersion: Uploaded -> Current -> Superseded
- At most one version per DocumentMaster is Current; promotion supersedes the old one atomically
"""
