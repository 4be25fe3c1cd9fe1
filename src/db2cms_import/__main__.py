from db2cms_import.cli import app

app()
