from setuptools import setup
from pathlib import Path

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name='volsync-populator',
    version='0.1.0',
    description='Volume populator provisioning PVCs from ReplicationDestination snapshots',
    long_description=long_description,
    long_description_content_type='text/markdown',
    # Explicitly list packages and their source directories
    packages=['populator', 'common'],
    package_dir={
        'populator': 'apps/populator',
        'common': 'apps/common',
    },
    install_requires=[
        'kubernetes>=29.0.0',
        'PyYAML>=6.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'volsync-populator=populator.main:main',
        ],
    },
    python_requires='>=3.11',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: System Administrators',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
    ],
)
