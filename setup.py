from setuptools import setup

setup(
    name="webconnectivity-summary",
    version="0.4.2",
    description="Web Connectivity Summary — classify censorship measurements as accessible or blocked",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    py_modules=["webconnectivity"],
    python_requires=">=3.8",
    install_requires=[],  # Zero external dependencies
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "webconnectivity-summary=webconnectivity:main",
        ],
    },
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Internet",
        "Topic :: Security",
        "Topic :: Scientific/Engineering",
    ],
    keywords="censorship internet-freedom network-measurement ooni web-connectivity",
)
