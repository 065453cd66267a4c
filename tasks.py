import os
import re
import sys

from invoke import run, task

version_file = os.path.join("body_parser", "__init__.py")
version_regex = re.compile(r"((?:\d+)\.(?:\d+)\.(?:\d+))")

test_success = False


@task
def test(ctx, all=False):
    global test_success

    test_cmd = [
        "pytest",  # Test command
        "--cov-report term-missing",  # Print only uncovered lines to stdout
        "--cov body_parser",  # Test only this package
        "--timeout=30",  # Each test should timeout after 30 sec
    ]

    # Test in this directory
    test_cmd.append("tests")

    # Run the command.
    res = run(" ".join(test_cmd), pty=False)
    test_success = res.ok


@task
def fuzz(ctx, target="dispatch", runs=100000):
    """Run one of the fuzz targets in the fuzz/ directory."""
    run("python fuzz/fuzz_%s.py -runs=%d" % (target, runs), pty=False)


@task(pre=[test])
def deploy(ctx):
    if not test_success:
        print("Tests must pass before deploying!", file=sys.stderr)
        return

    with open(version_file) as f:
        version = version_regex.search(f.read()).group(0)
    print("Building version %s" % version)

    # Build source distribution and wheel
    run("python setup.py sdist bdist_wheel")

    # Upload distributions from last step to pypi
    run("twine upload dist/*")
