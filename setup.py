#!/usr/bin/env python
"""esputil setup script."""
import os

from setuptools import setup, find_packages

from esputil import const

PROJECT_NAME = 'esputil'
PROJECT_PACKAGE_NAME = 'esputil'
PROJECT_LICENSE = 'MIT'

here = os.path.abspath(os.path.dirname(__file__))

with open(os.path.join(here, 'requirements.txt')) as requirements_txt:
    REQUIRES = requirements_txt.read().splitlines()

with open(os.path.join(here, 'README.md')) as readme:
    LONG_DESCRIPTION = readme.read()


setup(
    name=PROJECT_PACKAGE_NAME,
    version=const.__version__,
    license=PROJECT_LICENSE,
    description="Flash, read and monitor Espressif chips through the ROM bootloader",
    include_package_data=True,
    zip_safe=False,
    platforms='any',
    python_requires='>=3.8,<4.0',
    install_requires=REQUIRES,
    extras_require={
        'test': ['pytest>=7.0', 'intelhex>=2.3.0'],
    },
    long_description=LONG_DESCRIPTION,
    long_description_content_type='text/markdown',
    keywords=['esp32', 'esp8266', 'flash', 'bootloader', 'slip'],
    entry_points={
        'console_scripts': [
            'esputil = esputil.__main__:main'
        ]
    },
    packages=find_packages(include=["esputil", "esputil.*"])
)
