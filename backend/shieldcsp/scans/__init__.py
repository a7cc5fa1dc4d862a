from shieldcsp.scans.routes import scans_bp
