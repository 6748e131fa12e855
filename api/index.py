import os
import sys

# Add ROOT to sys.path (to find 'grc_asignaciones' package when not installed)
root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if root_dir not in sys.path:
    sys.path.append(root_dir)

from grc_asignaciones.app import create_app

app = create_app()
