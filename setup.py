"""Package configuration."""

from setuptools import find_namespace_packages, find_packages, setup

# The below list is only for CI
# For prod add the libs to the spicerack host and to the agent image
install_requires = [
    'wikimedia-spicerack',
    'wmflib',
    'cumin',
    'ClusterShell',
    'docker',
]

# Extra dependencies
extras_require = {
    # Test dependencies
    'tests': [
        'pytest>=6.1.0',
        'pyyaml',
        'pre-commit',
    ],
}

setup_requires = [
    'setuptools_scm>=1.15.0',
]

setup(
    description='Kubernetes node decommission cookbooks and host cleanup agent',
    entry_points={
        'console_scripts': [
            'node-decom-agent = decom_libs.agent.cli:main',
        ],
    },
    extras_require=extras_require,
    install_requires=install_requires,
    keywords=['automation', 'orchestration', 'cookbooks', 'kubernetes', 'decommission'],
    license='GPLv3+',
    name='node-decom-cookbooks',
    packages=(
        find_packages(exclude=['*.tests', '*.tests.*', 'tests', 'tests.*'])
        + find_namespace_packages(include=["cookbooks.*"])
    ),
    platforms=['GNU/Linux'],
    python_requires='>=3.9',
    setup_requires=setup_requires,
    use_scm_version={'fallback_version': '0.0.0'},
    zip_safe=False,
)
