import warnings

# ctranslate2 pulls in pkg_resources on some platforms
warnings.filterwarnings("ignore", message=".*pkg_resources is deprecated.*")

from sidecar.main import create_app

app = create_app()
