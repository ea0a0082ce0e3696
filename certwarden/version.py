# Initialize version as unknown
version = "?"

try:
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as get_version

    version = get_version("certwarden")
except PackageNotFoundError:
    print(
        "Cannot determine certwarden version. "
        'If running from source you should at least run "pip install -e ."'
    )

BANNER = "certwarden v{} - AD CS configuration auditing\n".format(version)
