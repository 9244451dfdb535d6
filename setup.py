"""
Setup configuration for DeviceHub package.
"""

from setuptools import setup, find_packages

# Read README for long description
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except FileNotFoundError:
    long_description = "Asyncio access to printers, cameras, USB devices, serial ports and scanners"


def get_extras():
    """Get extra dependencies."""
    test = [
        "pytest>=7.0",
        "pytest-asyncio>=0.21",
        "pytest-mock>=3.0",
    ]
    return {
        "test": test,
        "dev": test + [
            "pytest-cov>=2.0",
            "ruff>=0.1.0",
        ],
    }


# Core dependencies required on all platforms
install_requires = [
    "click>=8.0.0",  # CLI framework
    "pyserial>=3.5",  # Serial port enumeration and I/O
    "opencv-python-headless>=4.5",  # Camera capture and frame encoding
    "Pillow>=9.0",  # Image geometry for PDF assembly
    "reportlab>=3.6",  # PDF assembly
    # USB device information via udev
    "pyudev>=0.21.0; sys_platform == 'linux'",
]

setup(
    name="devicehub",
    version="0.1.0",
    author="DeviceHub Development Team",
    description="Asyncio access to printers, cameras, USB devices, serial ports and scanners",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["devicehub", "devicehub.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: POSIX :: Linux",
        "Operating System :: Microsoft :: Windows",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
        "Topic :: Printing",
        "Topic :: Multimedia :: Video :: Capture",
        "Topic :: System :: Hardware :: Hardware Drivers",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="printer scanner camera usb serial devices asyncio",
    python_requires=">=3.9",
    install_requires=install_requires,
    extras_require=get_extras(),
    entry_points={
        "console_scripts": [
            "devicehub=devicehub.cli:main",
        ],
    },
    zip_safe=False,
)
